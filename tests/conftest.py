"""
Shared pytest fixtures for the handoff core.

Every test gets its own campaigns root and metrics directory under
``tmp_path``; nothing touches the environment or the working directory.
"""
from __future__ import annotations

import copy
import json
from pathlib import Path
from typing import Any, Dict

import pytest

from campaignflow.handoffs.builder import HandoffBuilder
from campaignflow.handoffs.context_manager import ContextManager
from campaignflow.handoffs.path_resolver import CampaignPathResolver
from campaignflow.handoffs.validator import HandoffValidator
from campaignflow.shared.settings import HandoffSettings
from campaignflow.specs.common.enums import ORCHESTRATION_PHASE, STAGE_ORDER, Stage, next_stage

pytest_plugins = ("pytest_asyncio",)

CAMPAIGN_ID = "summer-sochi-2025"


def _outputs() -> Dict[str, Dict[str, Any]]:
    return {
        "data-collection": {
            "destination_analysis": {"destination": "Sochi", "season": "summer"},
            "market_intelligence": {"demand": "high", "competitors": 4},
            "consolidated_insights": {"headline": "Sea, sun and mountains"},
            "files": [{"path": "data/destination-analysis.json", "file_type": "data"}],
            "preserved_fields": ["destination_analysis"],
            "summary": "destination data collected",
        },
        "content": {
            "context_analysis": {"destination": "Sochi", "audience": "families"},
            "pricing_analysis": {"best_price": 45000, "min_price": 40000, "max_price": 60000, "currency": "RUB"},
            "generated_content": {"subject": "Summer in Sochi", "body": "Book your flight today"},
            "files": [{"path": "content/email-content.json", "file_type": "content", "is_primary": True}],
            "preserved_fields": ["pricing_analysis"],
        },
        "design": {
            "asset_manifest": {
                "images": [{"path": "assets/hero.png"}],
                "icons": [{"path": "assets/plane.svg"}],
                "fonts": [{"family": "Inter"}],
                "required_asset_count": 2,
            },
            "mjml_template": {"source": "<mjml><mj-body></mj-body></mjml>", "validation_status": "valid"},
            "files": [{"path": "templates/email-template.mjml", "file_type": "template"}],
        },
        "quality": {
            "quality_report": {"overall_score": 92, "approval_status": "approved", "recommendations": ["ship it"]},
            "files": [{"path": "docs/quality-report.json", "file_type": "report"}],
        },
        "delivery": {
            "delivery_manifest": {"total_files": 1, "files": [{"path": "exports/email-template.html"}]},
            "files": [{"path": "exports/email-template.html", "file_type": "template"}],
        },
    }


def write_declared_files(root: Path, outputs: Dict[str, Dict[str, Any]]) -> None:
    for output in outputs.values():
        for ref in output.get("files", []):
            target = root / ref["path"]
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(json.dumps({"generatedFor": ref["path"]}), encoding="utf-8")


@pytest.fixture
def settings(tmp_path: Path) -> HandoffSettings:
    return HandoffSettings(
        campaigns_root=tmp_path / "campaigns",
        io_timeout_seconds=5,
        lock_timeout_seconds=2,
        metrics_backend="file",
        metrics_dir=tmp_path / "metrics",
    )


@pytest.fixture
def resolver(settings: HandoffSettings) -> CampaignPathResolver:
    return CampaignPathResolver(settings)


@pytest.fixture
def context_manager() -> ContextManager:
    return ContextManager()


@pytest.fixture
def builder(settings: HandoffSettings, resolver: CampaignPathResolver) -> HandoffBuilder:
    return HandoffBuilder(settings, resolver)


@pytest.fixture
def validator(settings: HandoffSettings, resolver: CampaignPathResolver) -> HandoffValidator:
    return HandoffValidator(settings, resolver)


@pytest.fixture
def campaign_request(settings: HandoffSettings) -> Dict[str, Any]:
    return {
        "request": "Summer campaign for flights to Sochi",
        "campaign": {
            "id": CAMPAIGN_ID,
            "name": "Summer in Sochi",
            "storagePath": str(settings.campaigns_root / CAMPAIGN_ID),
            "brand": "Kupibilet",
        },
        "traceId": "trace-0001",
    }


@pytest.fixture
def campaign_dir(resolver: CampaignPathResolver, campaign_request: Dict[str, Any]) -> Path:
    return Path(resolver.ensure_layout(campaign_request["campaign"]["storagePath"]))


@pytest.fixture
def stage_outputs(campaign_dir: Path) -> Dict[str, Dict[str, Any]]:
    """Complete outputs for every stage, with their declared files on disk."""
    outputs = _outputs()
    write_declared_files(campaign_dir, outputs)
    return outputs


@pytest.fixture
def fresh_outputs():
    """Factory for an independent deep copy of the stage outputs."""
    return lambda: copy.deepcopy(_outputs())


@pytest.fixture
def build_through(builder, context_manager, stage_outputs):
    """Run ``enhance_for_handoff`` + ``build`` for every stage up to ``last``."""

    async def _build(context, last: Stage):
        if context.currentPhase == ORCHESTRATION_PHASE:
            context = context_manager.begin(context)
        envelopes = []
        for stage in STAGE_ORDER[: STAGE_ORDER.index(Stage(last)) + 1]:
            produced = copy.deepcopy(stage_outputs[stage.value])
            context = context_manager.enhance_for_handoff(context, produced)
            envelopes.append(await builder.build(stage, next_stage(stage), context, produced))
        return context, envelopes

    return _build
