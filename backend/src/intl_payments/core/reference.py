"""Reference table loading (countries, currencies, purpose codes, IBAN lengths)."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Mapping, Optional

import yaml

from .config import Settings, load_settings

_BUNDLED_PATH = Path(__file__).resolve().parent.parent / "reference" / "reference_data.yaml"


class ReferenceDataError(RuntimeError):
    """Raised when the reference tables are missing or malformed."""


@dataclass(frozen=True)
class ReferenceData:
    """Immutable lookup tables shared by the field validators."""

    countries: FrozenSet[str]
    currencies: FrozenSet[str]
    purpose_codes: Mapping[str, str]
    iban_lengths: Mapping[str, int]

    def purpose_description(self, code: str) -> Optional[str]:
        return self.purpose_codes.get(code)


def _as_codes(raw: Any, key: str) -> FrozenSet[str]:
    if not isinstance(raw, list) or not raw:
        raise ReferenceDataError(f"'{key}' must be a non-empty list")
    return frozenset(str(code).strip().upper() for code in raw)


@lru_cache(maxsize=4)
def _load_reference_file(path: Path) -> ReferenceData:
    if not path.exists():
        raise ReferenceDataError(f"reference data not found at {path}")

    with path.open("r", encoding="utf-8") as handle:
        raw: Dict[str, Any] = yaml.safe_load(handle) or {}

    purposes = raw.get("purpose_codes")
    lengths = raw.get("iban_lengths")
    if not isinstance(purposes, dict) or not purposes:
        raise ReferenceDataError("'purpose_codes' must be a non-empty mapping")
    if not isinstance(lengths, dict):
        raise ReferenceDataError("'iban_lengths' must be a mapping")

    return ReferenceData(
        countries=_as_codes(raw.get("countries"), "countries"),
        currencies=_as_codes(raw.get("international_currencies"), "international_currencies"),
        purpose_codes=MappingProxyType(
            {str(code).upper(): str(description) for code, description in purposes.items()}
        ),
        iban_lengths=MappingProxyType(
            {str(country).upper(): int(length) for country, length in lengths.items()}
        ),
    )


def load_reference_data(settings: Settings | None = None) -> ReferenceData:
    """Return the process-wide reference tables."""

    settings = settings or load_settings()
    path = settings.reference_data_path or _BUNDLED_PATH
    return _load_reference_file(Path(path))


__all__ = ["ReferenceData", "ReferenceDataError", "load_reference_data"]
