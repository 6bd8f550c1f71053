"""
Release and Analysis Models for PatchPilot
Pydantic models for GitHub payloads and AI backend responses
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator


class Release(BaseModel):
    """A GitHub release as returned by the releases API"""
    id: int
    tag_name: str
    name: Optional[str] = None
    body: Optional[str] = None
    prerelease: bool = False
    draft: bool = False
    published_at: Optional[datetime] = None
    html_url: Optional[str] = None

    @field_validator('name', 'body')
    @classmethod
    def empty_to_none(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.strip():
            return None
        return v

    @property
    def display_name(self) -> str:
        return self.name or self.tag_name


class AIResult(BaseModel):
    """Summary of a release body produced by the AI backend"""
    summary: str
    breaking: bool = False


class SecurityAnalysisResult(BaseModel):
    """Classification of an upstream diff produced by the AI backend"""
    analysis: str
    suspected_malicious: bool = Field(False, alias='isSuspectedMalicious')

    model_config = {'populate_by_name': True}
