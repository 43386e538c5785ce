import tomllib
from enum import StrEnum
from pathlib import Path

from docledger.schemas.document import DocumentStatus

ROOT = Path(__file__).resolve().parents[1]


def test_python_floor_covers_str_enum():
    # StrEnum arrived in Python 3.11.
    assert issubclass(DocumentStatus, StrEnum)
    with open(ROOT / "pyproject.toml", "rb") as fh:
        project = tomllib.load(fh)["project"]
    assert project["requires-python"] == ">=3.11"
