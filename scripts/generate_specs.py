#!/usr/bin/env python3
"""
Generate JSON Schemas and YAML variants from the Pydantic wire models.

Outputs under campaignflow/specs/:
 - schemas/*.json (and *.yaml)
 - handoffs.yaml: stage catalog with envelope file names and output schemas
"""
from __future__ import annotations

import json
import sys
from pathlib import Path

try:
    import yaml  # type: ignore
except Exception as exc:  # pragma: no cover
    print("PyYAML is required: pip install pyyaml", file=sys.stderr)
    raise


ROOT = Path(__file__).resolve().parents[1]
SPECS = ROOT / "campaignflow" / "specs"
SCHEMAS_DIR = SPECS / "schemas"

sys.path.insert(0, str(ROOT))

from campaignflow.specs.common.enums import PHASE_LABELS, STAGE_ORDER, next_stage  # noqa: E402
from campaignflow.specs.models import SCHEMA_MODELS, STAGE_OUTPUT_MODELS  # noqa: E402
from campaignflow.specs.models.envelope import DATA_VERSION, envelope_file_name  # noqa: E402
from campaignflow.specs.models.outputs import REQUIRED_OUTPUT_FIELDS  # noqa: E402


def write_json_yaml(obj: dict, json_path: Path) -> None:
    json_path.parent.mkdir(parents=True, exist_ok=True)
    with json_path.open("w", encoding="utf-8") as f:
        json.dump(obj, f, indent=2, ensure_ascii=False)
    yaml_path = json_path.with_suffix(".yaml")
    with yaml_path.open("w", encoding="utf-8") as f:
        yaml.safe_dump(obj, f, sort_keys=False)


def write_yaml(obj: dict, yaml_path: Path) -> None:
    yaml_path.parent.mkdir(parents=True, exist_ok=True)
    with yaml_path.open("w", encoding="utf-8") as f:
        yaml.safe_dump(obj, f, sort_keys=False, allow_unicode=True)


def generate_model_schemas() -> None:
    for filename, model in SCHEMA_MODELS.items():
        schema = model.model_json_schema()
        write_json_yaml(schema, SCHEMAS_DIR / filename)


def generate_handoff_catalog() -> None:
    # Build a reverse map from model -> schema filename
    reverse = {model: filename for filename, model in SCHEMA_MODELS.items()}
    stages: list[dict] = []
    for stage in STAGE_ORDER:
        model = STAGE_OUTPUT_MODELS[stage]
        fname = reverse.get(model)
        if not fname:
            raise KeyError(f"Schema filename not found for stage {stage.value}: output={model.__name__}")
        target = next_stage(stage)
        stages.append(
            {
                "name": stage.value,
                "phase": PHASE_LABELS[stage].value,
                "envelope": f"handoffs/{envelope_file_name(stage, target)}",
                "next": target.value if target else None,
                "requiredFields": list(REQUIRED_OUTPUT_FIELDS[stage]),
                "output": {"$ref": f"./schemas/{fname}"},
            }
        )

    doc = {
        "kind": "handoff-catalog",
        "dataVersion": DATA_VERSION,
        "envelope": {"$ref": "./schemas/handoff.envelope.schema.json"},
        "stages": stages,
    }
    write_yaml(doc, SPECS / "handoffs.yaml")


def main() -> None:
    generate_model_schemas()
    generate_handoff_catalog()
    print("Specs generated under campaignflow/specs/")


if __name__ == "__main__":
    main()
