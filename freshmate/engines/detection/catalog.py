"""
Static reference data: the fruit catalog and the fruit disease reference.

Both are served verbatim from JSON files shipped with the package.
"""

import json
from functools import lru_cache
from pathlib import Path
from typing import List

from freshmate.engines.detection.schemas import DiseaseDTO, FruitDTO

DATA_DIR = Path(__file__).resolve().parent.parent.parent / "data"


def _load(name: str) -> list:
    with open(DATA_DIR / name, encoding="utf-8") as f:
        return json.load(f)


@lru_cache(maxsize=1)
def get_fruit_catalog() -> List[FruitDTO]:
    return [FruitDTO(**entry) for entry in _load("fruits.json")]


@lru_cache(maxsize=1)
def get_disease_reference() -> List[DiseaseDTO]:
    return [DiseaseDTO(**entry) for entry in _load("diseases.json")]
