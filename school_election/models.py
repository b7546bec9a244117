"""Pydantic models for request/response validation."""
from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .ballot import Voter

SchoolLevel = Literal["elementary", "junior_high", "senior_high", "all"]
GradeLevel = Literal["3", "4", "5", "6", "7", "8", "9", "10", "11", "12"]
Category = Literal["Executive", "Legislative", "Departmental"]


def _reject_null(v):
    if v is None:
        raise ValueError("Field cannot be null")
    return v


class RegisterRequest(BaseModel):
    """Student registration request model."""

    reference_number: str = Field(..., min_length=5, max_length=50, description="School reference number")
    student_name: str = Field(..., min_length=2, max_length=100, description="Student full name")

    # Stripped before the length checks run
    model_config = ConfigDict(str_strip_whitespace=True, json_schema_extra={
        "example": {
            "reference_number": "2025-00123",
            "student_name": "Juan Dela Cruz"
        }
    })


class LoginRequest(BaseModel):
    """Login request model."""

    model_config = ConfigDict(str_strip_whitespace=True)

    reference_number: str
    student_name: str


class UserOut(BaseModel):
    id: int
    reference_number: str
    student_name: str
    is_admin: bool
    has_voted: bool
    votes: List[int] = Field(default_factory=list, description="Candidate ids on the ballot")
    school_level: Optional[str] = None
    grade_level: Optional[str] = None

    @classmethod
    def from_voter(cls, voter: Voter) -> "UserOut":
        return cls(
            id=voter.id,
            reference_number=voter.reference_number,
            student_name=voter.student_name,
            is_admin=voter.is_admin,
            has_voted=voter.has_voted,
            votes=list(voter.ballot),
            school_level=voter.school_level,
            grade_level=voter.grade_level
        )


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: UserOut


class SchoolLevelUpdate(BaseModel):
    school_level: SchoolLevel


class GradeLevelUpdate(BaseModel):
    grade_level: GradeLevel


class MassRegisterItem(RegisterRequest):
    pass


class PositionIn(BaseModel):
    """Position creation request model."""

    name: str = Field(..., min_length=1, description="Position name")
    max_votes: int = Field(default=1, ge=1, description="Votes a voter may cast for this position")
    category: Category = "Executive"

    @field_validator("name")
    @classmethod
    def strip_name(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("Position name is required")
        return v


class PositionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    max_votes: int
    display_order: int
    category: str


class CandidateIn(BaseModel):
    """Candidate creation request model. Vote counts always start at zero."""

    name: str = Field(..., min_length=1)
    position_id: int
    party_list_id: Optional[int] = None
    image_url: str = ""
    school_levels: List[SchoolLevel] = Field(default_factory=list)
    grade_levels: List[GradeLevel] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def strip_name(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("Valid candidate name is required")
        return v


class CandidateUpdate(BaseModel):
    """
    Editable candidate fields. vote_count is derived and cannot be set.

    Omitted fields are left unchanged; only party_list_id may be cleared
    with an explicit null.
    """

    name: Optional[str] = Field(default=None, min_length=1)
    position_id: Optional[int] = None
    party_list_id: Optional[int] = None
    image_url: Optional[str] = None
    school_levels: Optional[List[SchoolLevel]] = None
    grade_levels: Optional[List[GradeLevel]] = None

    @field_validator("name")
    @classmethod
    def strip_name(cls, v):
        v = v.strip() if v is not None else ""
        if not v:
            raise ValueError("Valid candidate name is required")
        return v

    @field_validator("position_id", "image_url", "school_levels", "grade_levels")
    @classmethod
    def not_null(cls, v):
        return _reject_null(v)


class CandidateOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    position_id: int
    party_list_id: Optional[int] = None
    image_url: str
    vote_count: int
    school_levels: List[str]
    grade_levels: List[str]


class PartyListIn(BaseModel):
    name: str = Field(..., min_length=1)
    color: str = "#0088FE"


class PartyListUpdate(BaseModel):
    """Editable party list fields; only the two image URLs may be cleared with null."""

    name: Optional[str] = Field(default=None, min_length=1)
    color: Optional[str] = None
    logo_url: Optional[str] = None
    platform_image_url: Optional[str] = None
    party_list_images: Optional[List[str]] = None

    @field_validator("name", "color", "party_list_images")
    @classmethod
    def not_null(cls, v):
        return _reject_null(v)


class PartyListOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    color: str
    logo_url: Optional[str] = None
    platform_image_url: Optional[str] = None
    party_list_images: List[str]


class SystemSettingsUpdate(BaseModel):
    left_logo_url: Optional[str] = None
    right_logo_url: Optional[str] = None
    splash_logo_url: Optional[str] = None
    voting_logo_url: Optional[str] = None

    @field_validator("left_logo_url", "right_logo_url", "splash_logo_url", "voting_logo_url")
    @classmethod
    def not_null(cls, v):
        return _reject_null(v)


class SystemSettingsOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    left_logo_url: str
    right_logo_url: str
    splash_logo_url: str
    voting_logo_url: str


class VoteResponse(BaseModel):
    """Vote submission response model."""

    message: str = Field(default="Vote recorded successfully", description="Response message")
    candidate_id: int
    votes: List[int] = Field(..., description="Candidate ids now on the ballot")
    voting_complete: bool = Field(..., description="Every position's cap has been reached")
    remaining_votes: Dict[int, int] = Field(..., description="Votes left per position id")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "message": "Vote recorded successfully",
            "candidate_id": 1,
            "votes": [1],
            "voting_complete": False,
            "remaining_votes": {"1": 0, "2": 2}
        }
    })


class BallotResponse(BaseModel):
    positions: List[PositionOut]
    candidates: List[CandidateOut]
    party_lists: List[PartyListOut]
    system_settings: SystemSettingsOut
    votes: List[int]
    has_voted: bool
    remaining_votes: Dict[int, int]
    voting_complete: bool


class MessageResponse(BaseModel):
    message: str


class HealthResponse(BaseModel):
    """Health check response model."""

    status: Literal["healthy", "unhealthy"] = Field(..., description="Overall health status")
    services: dict = Field(..., description="Status of individual services")
    timestamp: datetime = Field(default_factory=datetime.utcnow, description="Health check timestamp")


class ErrorResponse(BaseModel):
    """Error response model."""

    error: str = Field(..., description="Error type")
    message: str = Field(..., description="Error message")
    details: dict = Field(default_factory=dict, description="Additional error details")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "error": "position_cap_exceeded",
            "message": "You can only vote for 1 candidate for this position",
            "details": {"cap": 1}
        }
    })
