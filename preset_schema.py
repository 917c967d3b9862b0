"""
Schemas for Skin Applier inputs.

Two JSON documents cross the boundary of the apply engine:

``preset.json`` -- what the UI asks to apply.  Keys follow the UI's camelCase
naming; the snake_case field names are accepted too:

{
    "id": "default",
    "gamePath": "C:/Riot Games/League of Legends/Game",
    "selectedSkins": [
        "C:/skins/Ahri/Spirit Blossom Ahri.fantome",
        "C:/skins/Jinx/Star Guardian Jinx.zip"
    ],
    "noTFT": true,
    "ignoreConflict": false
}

``META/info.json`` -- the marker every imported mod carries.  Only the keys
the manager displays are modelled; anything else is preserved as extra data.

{
    "Name": "Spirit Blossom Ahri",
    "Author": "someone",
    "Version": "1.0.0",
    "Description": "..."
}
"""

from __future__ import annotations

import json
import logging
import os

from pydantic import BaseModel, ConfigDict, Field, field_validator

MOD_INFO_RELPATH = "META/info.json"

_log = logging.getLogger(__name__)


class ApplyRequest(BaseModel):
    """One apply attempt as requested by the UI."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = "default"
    game_path: str = Field(alias="gamePath")
    selected_skins: list[str] = Field(default_factory=list, alias="selectedSkins")
    no_tft: bool = Field(default=False, alias="noTFT")
    ignore_conflict: bool = Field(default=False, alias="ignoreConflict")

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, v: object) -> str:
        return str(v)

    @field_validator("game_path")
    @classmethod
    def _normalize_game_path(cls, v: str) -> str:
        v = v.strip()
        return os.path.normpath(v) if v else v

    @field_validator("selected_skins")
    @classmethod
    def _drop_blank(cls, v: list[str]) -> list[str]:
        kept = [item for item in v if item and item.strip()]
        if len(kept) != len(v):
            _log.warning("Ignoring %d blank entries in skin selection", len(v) - len(kept))
        return kept

    @property
    def profile_name(self) -> str:
        return f"preset_{self.id}"


class ModInfo(BaseModel):
    """Parsed contents of a mod's META/info.json."""

    model_config = ConfigDict(extra="allow")

    name: str | None = Field(default=None, alias="Name")
    author: str | None = Field(default=None, alias="Author")
    version: str | None = Field(default=None, alias="Version")
    description: str | None = Field(default=None, alias="Description")


def parse_preset(data: bytes | str) -> ApplyRequest:
    """Parse a preset JSON document.

    Raises ``pydantic.ValidationError`` if the data is invalid.
    Raises ``json.JSONDecodeError`` if the bytes are not valid JSON.
    """
    return ApplyRequest.model_validate(json.loads(data))


def parse_mod_info(data: bytes | str) -> ModInfo:
    # Tools write info.json with a BOM on Windows
    if isinstance(data, bytes):
        data = data.decode("utf-8-sig")
    return ModInfo.model_validate(json.loads(data))
