"""Pydantic schemas for the structured election payload produced by the structure batch."""

from pydantic import BaseModel, ConfigDict, Field


class StructuredCandidate(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str = ""
    slug: str | None = None
    currentRole: str | None = None
    party: str | None = None
    image_url: str | None = None
    linkedin_url: str | None = None
    campaign_website_url: str | None = None
    bio: str | None = None
    key_policies: list[str] | None = None
    home_city: str | None = None
    hometown_state: str | None = None
    additional_notes: str | None = None
    sources: list[str] | None = None
    email: str | None = None


class StructuredElectionInfo(BaseModel):
    model_config = ConfigDict(extra="ignore")

    title: str = ""
    type: str = "LOCAL"
    date: str  # MM/DD/YYYY
    city: str
    state: str
    number_of_seats: str | int | None = None
    description: str = ""


class StructuredElection(BaseModel):
    model_config = ConfigDict(extra="ignore")

    election: StructuredElectionInfo
    candidates: list[StructuredCandidate] = Field(default_factory=list)


class StructuredInput(BaseModel):
    elections: list[StructuredElection] = Field(default_factory=list)


class IngestResult(BaseModel):
    election_id: int
    position: str
    city: str
    state: str
    hidden: bool
    candidate_slugs: list[str]
    candidate_emails: list[str | None]
