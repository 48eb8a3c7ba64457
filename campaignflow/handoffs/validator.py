"""Four-layer handoff validation.

The layers (schema, dependency, consistency, path) share no state and run
concurrently; ``validate`` merges their results. Layers work on the raw JSON
form of the envelope so a malformed envelope still yields a full report.
"""
import asyncio
import os
import time
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from pydantic import BaseModel, ValidationError

from campaignflow.handoffs.path_resolver import CampaignPathResolver, canonicalize
from campaignflow.shared.async_io import run_io
from campaignflow.shared.logging_utils import info as log_info
from campaignflow.shared.logging_utils import warning as log_warning
from campaignflow.shared.settings import HandoffSettings
from campaignflow.specs.common.enums import STAGE_ORDER, TOTAL_STAGES, Stage, next_stage
from campaignflow.specs.common.errors import (
    ConsistencyValidationError,
    DependencyValidationError,
    PathResolutionError,
    PersistenceError,
    SchemaValidationError,
)
from campaignflow.specs.models.envelope import DATA_VERSION, HandoffEnvelope, transition_name
from campaignflow.specs.models.outputs import parse_stage_output
from campaignflow.specs.models.validation import ValidationResult

MIN_QUALITY_SCORE = 70
KNOWN_CURRENCIES = {"RUB", "USD", "EUR", "GBP", "CNY", "TRY", "AED", "KZT", "THB"}

EnvelopeLike = Union[HandoffEnvelope, Mapping[str, Any]]


def _as_raw(envelope: EnvelopeLike) -> Dict[str, Any]:
    if isinstance(envelope, BaseModel):
        return envelope.model_dump(mode="json")
    if isinstance(envelope, Mapping):
        return dict(envelope)
    raise TypeError(f"cannot validate {type(envelope).__name__} as a handoff envelope")


def _dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _list(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []


def _stage(value: Any) -> Optional[Stage]:
    try:
        return Stage(value)
    except ValueError:
        return None


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def _pydantic_messages(prefix: str, exc: ValidationError) -> List[str]:
    out = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        out.append(f"{prefix}.{loc}: {err.get('msg')}" if loc else f"{prefix}: {err.get('msg')}")
    return out


def declared_files(raw: Mapping[str, Any]) -> List[Tuple[str, bool]]:
    """``(path, required)`` for every file reference, first declaration wins."""
    seen: Dict[str, bool] = {}
    for output in _dict(raw.get("specialist_outputs")).values():
        for ref in _list(_dict(output).get("files")):
            if isinstance(ref, str):
                path, required = ref, True
            elif isinstance(ref, dict) and isinstance(ref.get("path"), str):
                path, required = ref["path"], bool(ref.get("required", True))
            else:
                continue
            if path.strip() and path not in seen:
                seen[path] = required
    return list(seen.items())


def _stat_dependency(root: Path, declared: str) -> str:
    """Return ``ok``, ``missing``, ``empty``, ``escapes`` or ``invalid`` for one file."""
    try:
        base = root.resolve()
        candidate = Path(declared)
        target = (candidate if candidate.is_absolute() else base / candidate).resolve()
        if target != base and base not in target.parents:
            return "escapes"
        if not target.is_file():
            return "missing"
        if target.stat().st_size == 0:
            return "empty"
    except (ValueError, OSError):
        # embedded NUL bytes, over-long names, unreadable parents
        return "invalid"
    return "ok"


class HandoffValidator:
    def __init__(
        self,
        settings: Optional[HandoffSettings] = None,
        resolver: Optional[CampaignPathResolver] = None,
    ) -> None:
        self._settings = settings or HandoffSettings.from_env()
        self._resolver = resolver or CampaignPathResolver(self._settings)

    async def validate(self, envelope: EnvelopeLike, campaign_path: Any) -> ValidationResult:
        raw = _as_raw(envelope)
        started = time.perf_counter()
        results = await asyncio.gather(
            self.validate_schema(raw),
            self.validate_dependencies(raw, campaign_path),
            self.validate_consistency(raw, campaign_path),
            self.validate_path(campaign_path),
        )
        merged = ValidationResult.merge(results)
        info = _dict(raw.get("handoff_info"))
        dims = dict(
            transition=_transition_of(raw),
            isValid=merged.isValid,
            schemaErrors=len(merged.schemaErrors),
            missingDependencies=len(merged.missingDependencies),
            consistencyIssues=len(merged.consistencyIssues),
            errors=len(merged.errors),
            warnings=len(merged.warnings),
            durationMs=round((time.perf_counter() - started) * 1000, 2),
        )
        if merged.isValid:
            log_info(info.get("campaign_id"), "handoff:validate", **dims)
        else:
            log_warning(info.get("campaign_id"), "handoff:validate:failed", **dims)
        return merged

    # layer 1
    async def validate_schema(self, envelope: EnvelopeLike) -> ValidationResult:
        raw = _as_raw(envelope)
        errors: List[str] = []
        outputs = raw.get("specialist_outputs")

        shell = {k: v for k, v in raw.items() if k != "specialist_outputs"}
        try:
            HandoffEnvelope.model_validate(shell)
        except ValidationError as exc:
            errors.extend(_pydantic_messages("envelope", exc))

        if outputs is not None and not isinstance(outputs, dict):
            errors.append("specialist_outputs must be an object keyed by stage name")
            outputs = {}
        outputs = outputs or {}
        for key, value in outputs.items():
            stage = _stage(key)
            if stage is None:
                errors.append(f"specialist_outputs has unknown stage {key!r}")
                continue
            if not isinstance(value, dict):
                errors.append(f"specialist_outputs.{key} must be an object")
                continue
            try:
                parse_stage_output(stage, value)
            except ValidationError as exc:
                errors.extend(_pydantic_messages(f"specialist_outputs.{key}", exc))

        info = _dict(raw.get("handoff_info"))
        status = _dict(raw.get("workflow_status"))
        from_stage = _stage(info.get("from_stage"))
        to_raw = info.get("to_stage")
        to_stage = _stage(to_raw) if to_raw is not None else None
        if from_stage is None:
            return ValidationResult(schemaErrors=errors)
        if to_raw is not None and to_stage is None:
            return ValidationResult(schemaErrors=errors)

        if to_stage != next_stage(from_stage):
            errors.append(
                f"{from_stage.value} -> {to_stage.value if to_stage else 'final'} is not an adjacent transition"
            )
        if info.get("data_version") not in (None, DATA_VERSION):
            errors.append(f"unsupported data_version {info.get('data_version')!r}, expected {DATA_VERSION}")

        expected = [s.value for s in STAGE_ORDER[: STAGE_ORDER.index(from_stage) + 1]]
        completed = _list(status.get("completed_stages"))
        if completed != expected:
            errors.append(f"completed_stages must be {expected}, got {completed}")
        if sorted(outputs) != sorted(expected):
            errors.append(f"specialist_outputs must hold exactly {expected}, got {sorted(outputs)}")
        if status.get("current_stage") not in (None, from_stage.value):
            errors.append(f"current_stage {status.get('current_stage')!r} does not match from_stage {from_stage.value}")
        expected_next = to_stage.value if to_stage else None
        if "next_stage" in status and status.get("next_stage") != expected_next:
            errors.append(f"next_stage {status.get('next_stage')!r} does not match to_stage {expected_next!r}")
        return ValidationResult(schemaErrors=errors)

    # layer 2
    async def validate_dependencies(self, envelope: EnvelopeLike, campaign_path: Any) -> ValidationResult:
        raw = _as_raw(envelope)
        try:
            root = Path(self._resolver.resolve(campaign_path))
        except PathResolutionError as exc:
            return ValidationResult(errors=[f"dependency check skipped: {exc}"])

        files = declared_files(raw)

        async def _check(path: str) -> str:
            try:
                return await run_io(
                    _stat_dependency,
                    root,
                    path,
                    timeout=self._settings.io_timeout_seconds,
                    operation=f"stat {path}",
                )
            except PersistenceError as exc:
                return f"error: {exc}"

        statuses = await asyncio.gather(*(_check(path) for path, _ in files))
        missing: List[str] = []
        warnings: List[str] = []
        for (path, required), status in zip(files, statuses):
            if status == "ok":
                continue
            if not required:
                warnings.append(f"optional file {path} is {status}")
                continue
            missing.append(path)
            if status != "missing":
                warnings.append(f"required file {path}: {status}")
        return ValidationResult(missingDependencies=missing, warnings=warnings)

    # layer 3
    async def validate_consistency(self, envelope: EnvelopeLike, campaign_path: Any = None) -> ValidationResult:
        raw = _as_raw(envelope)
        issues: List[str] = []
        warnings: List[str] = []

        info = _dict(raw.get("handoff_info"))
        snapshot = _dict(raw.get("campaign_context"))
        status = _dict(raw.get("workflow_status"))
        outputs = _dict(raw.get("specialist_outputs"))

        if snapshot and info.get("campaign_id") != snapshot.get("campaign_id"):
            issues.append(
                f"campaign id mismatch: handoff_info={info.get('campaign_id')!r} "
                f"campaign_context={snapshot.get('campaign_id')!r}"
            )
        paths = [p for p in (info.get("campaign_path"), snapshot.get("campaign_path")) if isinstance(p, str) and p]
        if campaign_path is not None:
            try:
                paths.append(self._resolver.resolve(campaign_path))
            except PathResolutionError:
                pass  # reported by the path layer
        if len({canonicalize(p) for p in paths}) > 1:
            issues.append(f"campaign path mismatch: {sorted(set(paths))}")

        completed = _list(status.get("completed_stages"))
        pct = _number(status.get("completion_percentage"))
        expected_pct = len(completed) / TOTAL_STAGES * 100
        if pct is not None and abs(pct - expected_pct) > 1e-9:
            issues.append(f"completion_percentage {pct} != {expected_pct} for {len(completed)} completed stages")

        for stage, check in (
            (Stage.DATA_COLLECTION, self._check_data_collection),
            (Stage.CONTENT, self._check_content),
            (Stage.DESIGN, self._check_design),
            (Stage.QUALITY, self._check_quality),
            (Stage.DELIVERY, self._check_delivery),
        ):
            if stage.value in outputs:
                found, soft = check(outputs)
                issues.extend(found)
                warnings.extend(soft)
        return ValidationResult(consistencyIssues=issues, warnings=warnings)

    @staticmethod
    def _check_data_collection(outputs: Dict[str, Any]) -> Tuple[List[str], List[str]]:
        meta = _dict(_dict(outputs.get(Stage.DATA_COLLECTION.value)).get("collection_metadata"))
        state = meta.get("collection_status")
        if state is not None and state != "complete":
            return [], [f"data collection finished with status {state!r}"]
        return [], []

    @staticmethod
    def _check_content(outputs: Dict[str, Any]) -> Tuple[List[str], List[str]]:
        issues: List[str] = []
        warnings: List[str] = []
        content = _dict(outputs.get(Stage.CONTENT.value))
        data = _dict(outputs.get(Stage.DATA_COLLECTION.value))

        collected = _dict(data.get("destination_analysis")).get("destination")
        written = _dict(content.get("context_analysis")).get("destination")
        if isinstance(collected, str) and isinstance(written, str):
            if collected.strip().lower() != written.strip().lower():
                issues.append(f"content destination {written!r} does not match collected destination {collected!r}")

        pricing = _dict(content.get("pricing_analysis"))
        low, high, best = (_number(pricing.get(k)) for k in ("min_price", "max_price", "best_price"))
        if low is not None and high is not None and low > high:
            issues.append(f"pricing min_price {low} exceeds max_price {high}")
        elif best is not None and low is not None and high is not None and not low <= best <= high:
            warnings.append(f"best_price {best} lies outside [{low}, {high}]")
        currency = pricing.get("currency")
        if isinstance(currency, str) and currency.upper() not in KNOWN_CURRENCIES:
            warnings.append(f"unusual pricing currency {currency!r}")
        return issues, warnings

    @staticmethod
    def _check_design(outputs: Dict[str, Any]) -> Tuple[List[str], List[str]]:
        issues: List[str] = []
        design = _dict(outputs.get(Stage.DESIGN.value))
        manifest = _dict(design.get("asset_manifest"))
        declared = manifest.get("required_asset_count")
        if isinstance(declared, int) and not isinstance(declared, bool):
            present = len(_list(manifest.get("images"))) + len(_list(manifest.get("icons")))
            if present != declared:
                issues.append(f"asset_manifest declares {declared} required assets but lists {present}")
        template = _dict(design.get("mjml_template"))
        if template.get("validation_status") == "errors":
            issues.append("mjml_template failed validation")
        return issues, []

    @staticmethod
    def _check_quality(outputs: Dict[str, Any]) -> Tuple[List[str], List[str]]:
        issues: List[str] = []
        report = _dict(_dict(outputs.get(Stage.QUALITY.value)).get("quality_report"))
        if not report:
            return [], ["quality output has no quality_report"]
        score = _number(report.get("overall_score"))
        if score is not None and score < MIN_QUALITY_SCORE:
            issues.append(f"quality score {score} is below {MIN_QUALITY_SCORE}")
        approval = report.get("approval_status")
        if approval is not None and approval != "approved":
            issues.append(f"quality approval_status is {approval!r}")
        return issues, []

    @staticmethod
    def _check_delivery(outputs: Dict[str, Any]) -> Tuple[List[str], List[str]]:
        manifest = _dict(_dict(outputs.get(Stage.DELIVERY.value)).get("delivery_manifest"))
        total = manifest.get("total_files")
        if isinstance(total, int) and not isinstance(total, bool):
            listed = len(_list(manifest.get("files")))
            if listed != total:
                return [f"delivery_manifest total_files {total} != {listed} listed files"], []
        return [], []

    # layer 4
    async def validate_path(self, campaign_path: Any) -> ValidationResult:
        try:
            root = self._resolver.resolve(campaign_path)
        except PathResolutionError as exc:
            return ValidationResult(errors=[str(exc)])

        def _inspect() -> List[str]:
            base = Path(root)
            if not base.is_dir():
                return [f"campaign directory {root} does not exist"]
            found: List[str] = []
            if not os.access(base, os.W_OK):
                found.append(f"campaign directory {root} is not writable")
            missing = self._resolver.missing_layout(root)
            if missing:
                found.append(f"campaign directory {root} is missing: {', '.join(missing)}")
            return found

        try:
            errors = await run_io(_inspect, timeout=self._settings.io_timeout_seconds, operation="inspect campaign path")
        except PersistenceError as exc:
            errors = [str(exc)]
        return ValidationResult(errors=errors)

    def ensure_valid(
        self,
        result: ValidationResult,
        *,
        transition: Optional[str] = None,
        workflow_phase: Optional[str] = None,
    ) -> ValidationResult:
        """Raise the error of the first failing layer, or return ``result``."""
        if result.isValid:
            return result
        where = f" at {transition}" if transition else ""
        if result.schemaErrors:
            raise SchemaValidationError(
                f"schema validation failed{where}: {result.schemaErrors[0]}",
                result, transition, workflow_phase,
            )
        if result.missingDependencies:
            raise DependencyValidationError(
                f"missing dependencies{where}: {', '.join(result.missingDependencies)}",
                result, transition, workflow_phase,
            )
        if result.consistencyIssues:
            raise ConsistencyValidationError(
                f"consistency validation failed{where}: {result.consistencyIssues[0]}",
                result, transition, workflow_phase,
            )
        raise PathResolutionError(
            f"path validation failed{where}: {result.errors[0]}",
            details={
                "layer": "path",
                "transition": transition,
                "workflowPhase": workflow_phase,
                "validation": result.model_dump(),
            },
        )


def _transition_of(raw: Mapping[str, Any]) -> Optional[str]:
    info = _dict(raw.get("handoff_info"))
    src = _stage(info.get("from_stage"))
    if src is None:
        return None
    dst = _stage(info.get("to_stage")) if info.get("to_stage") is not None else None
    return transition_name(src, dst)


__all__ = ["HandoffValidator", "declared_files"]
