"""Workflow continuity scoring over a chain of handoff envelopes.

Each envelope is one transition. Its score blends three ratios:

* fields: required sections of the new stage's output that are present;
* values: non-empty leaf values in the new stage's contribution;
* preserved: fields earlier stages flagged as preserved that are still
  present and unchanged compared with the previous envelope.

The analyzer is diagnostic. It reports, it never raises on a poor chain.
"""
from statistics import mean
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from pydantic import ValidationError

from campaignflow.shared.logging_utils import info as log_info
from campaignflow.shared.settings import HandoffSettings
from campaignflow.shared.state_common import utc_now
from campaignflow.specs.common.enums import IssueSeverity, IssueType, Stage
from campaignflow.specs.models.continuity import (
    ContinuityIssue,
    ContinuityReport,
    RollbackTrigger,
    TransitionScore,
)
from campaignflow.specs.models.envelope import HandoffEnvelope, transition_name
from campaignflow.specs.models.outputs import REQUIRED_OUTPUT_FIELDS

DEFAULT_PRESERVATION_THRESHOLD = 95.0

# bookkeeping keys that are not part of a stage's contribution
_BOOKKEEPING = {"stage", "files", "preserved_fields", "summary"}

_MISSING = object()


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, dict)):
        return len(value) == 0
    return False


def _leaves(value: Any, prefix: str) -> List[Tuple[str, Any]]:
    if isinstance(value, dict) and value:
        out: List[Tuple[str, Any]] = []
        for key, nested in value.items():
            out.extend(_leaves(nested, f"{prefix}.{key}"))
        return out
    if isinstance(value, list) and value:
        out = []
        for i, nested in enumerate(value):
            out.extend(_leaves(nested, f"{prefix}[{i}]"))
        return out
    return [(prefix, value)]


def _stage_of(value: Any) -> Optional[Stage]:
    try:
        return Stage(value)
    except ValueError:
        return None


def _severity(distance: float) -> IssueSeverity:
    if distance >= 20:
        return IssueSeverity.CRITICAL
    if distance >= 10:
        return IssueSeverity.HIGH
    if distance >= 5:
        return IssueSeverity.MEDIUM
    return IssueSeverity.LOW


def _outputs(envelope: Union[HandoffEnvelope, Mapping[str, Any]]) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """``(handoff_info, specialist_outputs)`` as plain JSON data.

    Fields left at their model defaults are dropped, so only what a stage
    actually filled in is scored.
    """
    if not isinstance(envelope, HandoffEnvelope):
        try:
            envelope = HandoffEnvelope.model_validate(dict(envelope))
        except ValidationError:
            raw = dict(envelope)
            info = raw.get("handoff_info") if isinstance(raw.get("handoff_info"), dict) else {}
            outputs = raw.get("specialist_outputs") if isinstance(raw.get("specialist_outputs"), dict) else {}
            return info, outputs
    info = envelope.handoff_info.model_dump(mode="json")
    outputs = {
        key: output.model_dump(mode="json", exclude_defaults=True)
        for key, output in envelope.specialist_outputs.items()
    }
    return info, outputs


class ContinuityAnalyzer:
    def __init__(
        self,
        settings: Optional[HandoffSettings] = None,
        *,
        weights: Optional[Sequence[float]] = None,
        threshold: Optional[float] = None,
        preservation_threshold: float = DEFAULT_PRESERVATION_THRESHOLD,
    ) -> None:
        settings = settings or HandoffSettings.from_env()
        raw_weights = tuple(weights) if weights is not None else settings.continuity_weights
        if len(raw_weights) != 3 or any(w < 0 for w in raw_weights) or sum(raw_weights) <= 0:
            raise ValueError("weights must be three non-negative numbers with a positive sum")
        total = float(sum(raw_weights))
        self.weights = tuple(w / total for w in raw_weights)
        self.threshold = settings.continuity_threshold if threshold is None else float(threshold)
        self.preservation_threshold = preservation_threshold

    def analyze(self, envelope_chain: Sequence[Union[HandoffEnvelope, Mapping[str, Any]]]) -> ContinuityReport:
        if not envelope_chain:
            raise ValueError("continuity analysis needs at least one envelope")

        scores: List[TransitionScore] = []
        issues: List[ContinuityIssue] = []
        previous: Optional[Dict[str, Any]] = None
        campaign_id: Optional[str] = None
        for position, envelope in enumerate(envelope_chain, start=1):
            info, outputs = _outputs(envelope)
            campaign_id = campaign_id or info.get("campaign_id")
            if _stage_of(info.get("from_stage")) is None:
                score, issue = self._unreadable(position, info)
                scores.append(score)
                issues.append(issue)
                continue
            score = self._score_transition(info, outputs, previous)
            scores.append(score)
            issue = self._issue_for(score)
            if issue is not None:
                issues.append(issue)
            previous = outputs

        continuity = round(mean(s.score for s in scores), 2)
        report = ContinuityReport(
            campaign_id=campaign_id,
            generated_at=utc_now(),
            transitions=scores,
            continuity_score=continuity,
            threshold=self.threshold,
            continuity_issues=issues,
            rollback_triggers=self._rollback_triggers(continuity, scores),
        )
        log_info(
            campaign_id,
            "continuity:analyze",
            continuityScore=continuity,
            transitions=len(scores),
            issues=len(issues),
            critical=len(report.critical_issues),
        )
        return report

    def _score_transition(
        self,
        info: Dict[str, Any],
        outputs: Dict[str, Any],
        previous: Optional[Dict[str, Any]],
    ) -> TransitionScore:
        from_stage = Stage(info["from_stage"])
        to_stage = _stage_of(info.get("to_stage"))
        transition = transition_name(from_stage, to_stage)

        missing_outputs = [s for s in (previous or {}) if s not in outputs]
        contribution = outputs.get(from_stage.value)
        if not isinstance(contribution, dict):
            missing_outputs.append(from_stage.value)
            contribution = {}

        # (a) required sections present
        required = REQUIRED_OUTPUT_FIELDS.get(from_stage, [])
        missing_fields = [f for f in required if contribution.get(f) is None]
        fields_ratio = 1.0 if not required else (len(required) - len(missing_fields)) / len(required)

        # (b) non-empty leaves of what the stage contributed
        leaves: List[Tuple[str, Any]] = []
        for key, value in contribution.items():
            if key in _BOOKKEEPING or value is None:
                continue
            leaves.extend(_leaves(value, key))
        empty_fields = [path for path, value in leaves if _is_empty(value)]
        values_ratio = 1.0 if not leaves else (len(leaves) - len(empty_fields)) / len(leaves)

        # (c) preserved fields of earlier stages unchanged
        changed: List[str] = []
        checked = 0
        for stage_name, earlier in (previous or {}).items():
            if not isinstance(earlier, dict):
                continue
            names = earlier.get("preserved_fields") or []
            current = outputs.get(stage_name)
            if not isinstance(current, dict):
                # the whole earlier contribution is gone
                checked += max(1, len(names))
                changed.extend([f"{stage_name}.{name}" for name in names] or [stage_name])
                continue
            for name in names:
                checked += 1
                before = earlier.get(name, _MISSING)
                after = current.get(name, _MISSING)
                if after != before:
                    changed.append(f"{stage_name}.{name}")
        preserved_ratio = 1.0 if checked == 0 else (checked - len(changed)) / checked

        w_fields, w_values, w_preserved = self.weights
        raw_score = 100 * (w_fields * fields_ratio + w_values * values_ratio + w_preserved * preserved_ratio)
        return TransitionScore(
            transition=transition,
            from_stage=from_stage,
            to_stage=to_stage,
            score=round(min(100.0, max(0.0, raw_score)), 2),
            factors={
                "fields": round(fields_ratio, 4),
                "values": round(values_ratio, 4),
                "preserved": round(preserved_ratio, 4),
            },
            missing_fields=missing_fields,
            empty_fields=empty_fields,
            changed_preserved_fields=changed,
            missing_outputs=missing_outputs,
        )

    @staticmethod
    def _unreadable(position: int, info: Dict[str, Any]) -> Tuple[TransitionScore, ContinuityIssue]:
        """An envelope without a usable ``from_stage`` scores zero."""
        transition = f"envelope-{position}"
        score = TransitionScore(
            transition=transition,
            score=0.0,
            factors={"fields": 0.0, "values": 0.0, "preserved": 0.0},
            missing_outputs=["handoff_info.from_stage"],
        )
        issue = ContinuityIssue(
            transition=transition,
            severity=IssueSeverity.CRITICAL,
            issue_type=IssueType.DATA_LOSS,
            score=0.0,
            description=f"envelope {position} has no readable from_stage ({info.get('from_stage')!r})",
            affected_fields=["handoff_info.from_stage"],
        )
        return score, issue

    def _issue_for(self, score: TransitionScore) -> Optional[ContinuityIssue]:
        if score.score >= self.threshold:
            return None
        distance = self.threshold - score.score
        if score.missing_outputs:
            issue_type = IssueType.DATA_LOSS
            affected = list(score.missing_outputs)
            description = f"stage outputs lost during {score.transition}: {', '.join(affected)}"
        else:
            factors = score.factors
            weakest = min(("fields", "values", "preserved"), key=lambda name: factors[name])
            issue_type, affected, description = {
                "fields": (
                    IssueType.SPECIFICATION_DRIFT,
                    score.missing_fields,
                    f"required sections missing after {score.transition}",
                ),
                "values": (
                    IssueType.QUALITY_DEGRADATION,
                    score.empty_fields,
                    f"empty values in the {score.from_stage.value} contribution",
                ),
                "preserved": (
                    IssueType.CONTEXT_LOSS,
                    score.changed_preserved_fields,
                    f"preserved fields changed or dropped during {score.transition}",
                ),
            }[weakest]
        return ContinuityIssue(
            transition=score.transition,
            severity=_severity(distance),
            issue_type=issue_type,
            score=score.score,
            description=description,
            affected_fields=list(affected),
        )

    def _rollback_triggers(self, continuity: float, scores: List[TransitionScore]) -> List[RollbackTrigger]:
        preservation = min(s.factors.get("preserved", 1.0) for s in scores) * 100
        return [
            RollbackTrigger(
                trigger_type="overall_continuity",
                threshold=self.threshold,
                current_value=continuity,
                triggered=continuity < self.threshold,
                action_required="re-run the degraded stage" if continuity < self.threshold else "",
            ),
            RollbackTrigger(
                trigger_type="preservation",
                threshold=self.preservation_threshold,
                current_value=round(preservation, 2),
                triggered=preservation < self.preservation_threshold,
                action_required=(
                    "restore preserved fields from the previous envelope"
                    if preservation < self.preservation_threshold
                    else ""
                ),
            ),
        ]


__all__ = ["ContinuityAnalyzer"]
