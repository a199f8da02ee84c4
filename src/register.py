# src/register.py
"""
Scans the local `content/` directory plus any mod folders, loads every JSON
definition into its Pydantic model, and assembles them into a validated Catalog.
Ignores any subfolder named "meta" or starting with a dot.
Definitions are keyed by `id`; a later folder overrides an earlier one with the
same id, so mods listed after local content win.
"""
import json
import logging
from pathlib import Path
from typing import Dict, List, Optional, Type

from pydantic import BaseModel, ValidationError

import objects as G
from errors import ConfigError

logger = logging.getLogger(__name__)

# Local content directory
LOCAL_CONTENT = Path(__file__).resolve().parent.parent / "content"
# Mod folders are loaded after local content and override it by id
MOD_PATHS: List[Path] = []

# Folder name -> model stored in that folder
CONTENT_MODELS: Dict[str, Type[BaseModel]] = {
    "Good": G.Good,
    "Want": G.Want,
    "Process": G.Process,
    "DesireSource": G.DesireSource,
}


def is_valid_folder(path: Path) -> bool:
    return (
        path.is_dir()
        and not path.name.startswith('.')
        and path.name != 'meta'
    )


def _read_entries(json_file: Path) -> List[dict]:
    try:
        data = json.loads(json_file.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ConfigError(f"Error parsing {json_file}: {e}") from e
    # a file may hold one definition or a list of them
    return data if isinstance(data, list) else [data]


def register_content(folders: List[Path]) -> Dict[str, Dict[str, BaseModel]]:
    """
    Load all JSON files in each valid subfolder of the given folders and
    collect them as { model_name: { id: instance, ... } }.
    """
    registry: Dict[str, Dict[str, BaseModel]] = {name: {} for name in CONTENT_MODELS}

    for folder in folders:
        if not folder.exists():
            continue
        for sub in sorted(folder.iterdir()):
            if not is_valid_folder(sub):
                continue
            model_cls = CONTENT_MODELS.get(sub.name)
            if model_cls is None:
                logger.debug("Skipping unknown content folder %s", sub)
                continue
            for json_file in sorted(sub.glob("*.json")):
                for entry in _read_entries(json_file):
                    try:
                        instance = model_cls.model_validate(entry)
                    except ValidationError as e:
                        raise ConfigError(f"Error parsing {json_file}: {e}") from e
                    key = getattr(instance, 'id')
                    if key in registry[sub.name]:
                        logger.info("%s '%s' from %s overrides an earlier definition", sub.name, key, json_file)
                    registry[sub.name][key] = instance

    return registry


def load_catalog(folders: Optional[List[Path]] = None, time_good_id: str = G.TIME_GOOD_ID) -> G.Catalog:
    """Read content folders and build the catalog. Raises ConfigError on any bad definition."""
    if folders is None:
        folders = [LOCAL_CONTENT] + MOD_PATHS
    registry = register_content(folders)
    catalog = G.Catalog.build(
        goods=list(registry["Good"].values()),
        wants=list(registry["Want"].values()),
        processes=list(registry["Process"].values()),
        sources=list(registry["DesireSource"].values()),
        time_good_id=time_good_id,
    )
    logger.info(
        "Catalog loaded: %d goods, %d wants, %d processes, %d desire sources, %d classes",
        len(catalog.goods), len(catalog.wants), len(catalog.processes),
        len(catalog.sources), len(catalog.classes),
    )
    return catalog


def main():
    logging.basicConfig(level=logging.INFO)
    catalog = load_catalog()
    # Summary output
    for name, collection in (
        ("Good", catalog.goods),
        ("Want", catalog.wants),
        ("Process", catalog.processes),
        ("DesireSource", catalog.sources),
    ):
        print(f"Loaded {len(collection)} {name} entries.")


if __name__ == "__main__":
    main()
