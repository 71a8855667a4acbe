"""
Applicant record for the RK-Termin booking form.

The record is read once from ``config.json`` (one JSON object) or from a CSV
file whose first row holds the applicant:

    {
        "lastname": "Doe",
        "firstname": "Jane",
        "email": "jane@example.com",
        "passportNumber": "X123",
        "province": "Sindh",
        "country": "Pakistan"
    }
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path

import pandas as pd

log = logging.getLogger("applicant")

# config key -> attribute
FIELD_MAP = {
    "lastname":       "lastname",
    "firstname":      "firstname",
    "email":          "email",
    "passportNumber": "passport_number",
    "province":       "province",
    "country":        "country",
}


class ConfigError(Exception):
    """Applicant configuration is missing, unreadable or incomplete."""


@dataclass(frozen=True)
class Applicant:
    lastname: str
    firstname: str
    email: str
    passport_number: str
    province: str
    country: str

    @property
    def name(self) -> str:
        return f"{self.firstname} {self.lastname}"

    @classmethod
    def from_record(cls, record: dict) -> Applicant:
        """Build an applicant from a raw config mapping; every field must be non-empty."""
        cleaned = {
            str(k).strip(): str(v).strip()
            for k, v in record.items()
            if v is not None
        }
        missing = [key for key in FIELD_MAP if not cleaned.get(key)]
        if missing:
            raise ConfigError(f"Missing or empty applicant field(s): {', '.join(missing)}")
        return cls(**{attr: cleaned[key] for key, attr in FIELD_MAP.items()})


def _read_csv_record(path: Path) -> dict:
    df = pd.read_csv(path, dtype=str).fillna("")
    records = df.to_dict(orient="records")
    if not records:
        raise ConfigError(f"No applicant rows in {path}")
    if len(records) > 1:
        log.warning(f"{path} has {len(records)} rows – using the first one only.")
    return records[0]


def _read_json_record(path: Path) -> dict:
    try:
        record = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Invalid JSON in {path}: {exc}") from exc
    if not isinstance(record, dict):
        raise ConfigError(f"{path} must contain a JSON object, got {type(record).__name__}")
    return record


def load_applicant(path) -> Applicant:
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")

    if path.suffix.lower() == ".csv":
        record = _read_csv_record(path)
    else:
        record = _read_json_record(path)

    applicant = Applicant.from_record(record)
    log.info(f"Loaded applicant {applicant.name} from {path}")
    return applicant
