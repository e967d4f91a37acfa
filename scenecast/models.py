"""Core domain models.

All pipeline stages, the cache and the HTTP API operate on these types.
Pydantic is used for validation and serialisation at every data boundary.

The Character wire shape is shared with the UI and the local cache, so the
`isGenerated` key keeps its camelCase name on the wire; Python code uses
`is_generated`.
"""

from __future__ import annotations

import uuid
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, computed_field

Category = Literal["main", "side"]


class Eyes(BaseModel):
    shape: str = "average"
    hex: str = "#6B4E3D"


class Hair(BaseModel):
    style: str = "short"
    hex: str = "#111111"


class Skin(BaseModel):
    hex: str = "#C69C77"


class Body(BaseModel):
    age: int = 30
    height_cm: int = 170
    build: str = "average"


class Defaults(BaseModel):
    expression: str = "neutral"


class Appearance(BaseModel):
    """Visual identity ("DNA") of a character. Every field is always populated."""

    face: str = "average proportions"
    eyes: Eyes = Field(default_factory=Eyes)
    hair: Hair = Field(default_factory=Hair)
    skin: Skin = Field(default_factory=Skin)
    body: Body = Field(default_factory=Body)
    mark: str = "no visible mark"
    accessory: str = "simple wristwatch"
    outfit: str = "neutral outfit"
    defaults: Defaults = Field(default_factory=Defaults)

    def describe(self) -> str:
        """One-line description, always led by the age."""
        return (
            f"{self.body.age} year old, {self.face}, "
            f"{self.hair.style} hair ({self.hair.hex}), "
            f"{self.eyes.shape} eyes ({self.eyes.hex}), "
            f"skin tone {self.skin.hex}, {self.body.build} build, {self.body.height_cm}cm, "
            f"wears {self.outfit}, {self.mark}, carries {self.accessory}, "
            f"{self.defaults.expression} expression"
        )


def new_id() -> str:
    return uuid.uuid4().hex


class Character(BaseModel):
    """A deduplicated human entity in one story's registry."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=new_id)
    name: str = Field(min_length=1)
    aliases: list[str] = Field(default_factory=list)
    category: Category = "side"
    is_generated: bool = Field(default=False, alias="isGenerated")
    appearance: Appearance = Field(default_factory=Appearance)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def description(self) -> str:
        return f"{self.name}, {self.appearance.describe()}"

    def wire(self) -> dict:
        """Serialise to the JSON shape shared with the UI and the cache."""
        return self.model_dump(by_alias=True)


class SceneLine(BaseModel):
    """One bounded-length narrative segment; maps to exactly one prompt."""

    index: int = Field(ge=1)  # 1-based narrative position
    text: str = Field(min_length=1)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def word_count(self) -> int:
        return len(self.text.split())


class ThemeProfile(BaseModel):
    """Free-text classification of a story; only a hint for naming and ages."""

    theme: str = "Drama"
    tone: str = "Emotional, Tense"
    genre: str = "Drama"
    era: str = "Modern Day"


class LinePrompt(BaseModel):
    """The generation-ready prompt for one scene line."""

    index: int
    line: str
    cast: list[str] = Field(default_factory=list)  # character names
    prompt: str


class StoryAnalysis(BaseModel):
    """Everything one analysis run produced for a story."""

    key: str
    theme: ThemeProfile = Field(default_factory=ThemeProfile)
    lines: list[SceneLine] = Field(default_factory=list)
    characters: list[Character] = Field(default_factory=list)
    prompts: list[LinePrompt] = Field(default_factory=list)
    cancelled: bool = False
    style: str | None = None  # style the prompts were built with; None → style lock
    settings: str = ""  # fingerprint of the limits and templates used

    @computed_field  # type: ignore[prop-decorator]
    @property
    def counts(self) -> dict[str, int]:
        main = sum(1 for c in self.characters if c.category == "main")
        return {"main": main, "side": len(self.characters) - main, "total": len(self.characters)}

    def wire(self) -> dict:
        return self.model_dump(by_alias=True)
