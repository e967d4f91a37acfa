"""Pydantic request models for API endpoints."""

from pydantic import BaseModel

from scenecast.models import Character, ThemeProfile


class StoryBody(BaseModel):
    text: str


class CharactersBody(BaseModel):
    text: str
    theme: ThemeProfile | None = None


class CastBody(BaseModel):
    line: str
    characters: list[Character]


class PromptBody(BaseModel):
    style: str | None = None
    cast: list[Character]
    scene_line: str


class AnalyseBody(BaseModel):
    text: str
    style: str | None = None
    refresh: bool = False
