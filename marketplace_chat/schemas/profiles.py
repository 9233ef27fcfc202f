from __future__ import annotations

from pydantic import BaseModel, ConfigDict


class ProfilePublic(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    display_name: str
