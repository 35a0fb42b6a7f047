from pydantic import BaseModel

from .identifier import Identifier


class ContentProfileRule(BaseModel):
    path: list[Identifier]
    must_support: bool = False


class ContentProfile(BaseModel):
    """Flags on paths of an element, applied to its profile after the mapping."""

    identifier: Identifier
    rules: list[ContentProfileRule] = []
