"""
Generates JSON Schema files for every content model the registry loads,
placing each schema under content/meta/<ModelName>/schema.json
"""
import json
from pathlib import Path
from typing import List, Optional

from register import CONTENT_MODELS, LOCAL_CONTENT
from config import SimConfig


def write_schemas(content_dir: Optional[Path] = None) -> List[Path]:
    content_dir = Path(content_dir) if content_dir is not None else LOCAL_CONTENT
    # Base output directory for schemas
    output_base = content_dir / "meta"
    output_base.mkdir(parents=True, exist_ok=True)

    models = dict(CONTENT_MODELS)
    models["SimConfig"] = SimConfig

    written: List[Path] = []
    for name, cls in models.items():
        schema_dict = cls.model_json_schema()

        # Prepare output folder: content/meta/<ModelName>/
        model_dir = output_base / name
        model_dir.mkdir(parents=True, exist_ok=True)

        schema_file = model_dir / "schema.json"
        with open(schema_file, "w", encoding="utf-8") as f:
            json.dump(schema_dict, f, indent=2)
        written.append(schema_file)

    return written


def main():
    for schema_file in write_schemas():
        print(f"✔ Wrote schema for '{schema_file.parent.name}' to {schema_file}")


if __name__ == "__main__":
    main()
