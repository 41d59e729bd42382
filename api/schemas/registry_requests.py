from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, field_validator


class ImportCompanyRequest(BaseModel):
    """Body of ``POST /api/v1/sudreg/import``.

    Blank strings read as missing. Identifiers may arrive as JSON numbers.
    """

    name: Optional[str] = None
    oib: Optional[str] = None
    mbs: Optional[str] = None
    website: Optional[str] = None

    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    @field_validator("name", "oib", "mbs", "website")
    @classmethod
    def _blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        return v or None
