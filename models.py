"""Feedback data models shared across the pipeline."""

from datetime import datetime
from enum import Enum
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

MAX_TAGS = 5


class Sentiment(str, Enum):
    """Sentiment verdict. PENDING means not analyzed yet, or analysis failed."""
    POSITIVE = "Positive"
    NEUTRAL = "Neutral"
    NEGATIVE = "Negative"
    PENDING = "Pending"


class Category(str, Enum):
    """Canonical feedback categories."""
    BUG = "Bug Report"
    FEATURE = "Feature Request"
    UX_UI = "UX/UI"
    PERFORMANCE = "Performance"
    OTHER = "Other"
    UNCLASSIFIED = "Unclassified"


class FeedbackStatus(str, Enum):
    """Triage status of a feedback item."""
    NEW = "New"
    IN_PROGRESS = "In Progress"
    RESOLVED = "Resolved"


# ============================================================================
# UPSTREAM MODELS
# ============================================================================

class UpstreamFeedbackItem(BaseModel):
    """One raw record from the upstream feedback API."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore", coerce_numbers_to_str=True)

    id: int
    user_id: Optional[Union[int, str]] = None
    nick_name: Optional[str] = Field(default=None, alias="nickName")
    avatar: Optional[str] = None
    user_img: Optional[str] = Field(default=None, alias="userImg")
    create_time: Union[int, float, str] = Field(alias="createTime")  # ISO string or epoch millis
    content: Optional[str] = None
    moments_text: Optional[str] = Field(default=None, alias="momentsText")
    type: Optional[str] = None
    status: Optional[int] = None
    image_url: Optional[str] = Field(default=None, alias="imageUrl")
    content_type: Optional[int] = Field(default=None, alias="contentType")
    user_type: Optional[str] = Field(default=None, alias="userType")
    app_version: Optional[str] = None


# ============================================================================
# CANONICAL MODELS
# ============================================================================

class AnalysisResult(BaseModel):
    """AI enrichment verdict for one content string."""
    model_config = ConfigDict(frozen=True)

    sentiment: Sentiment
    category: Category
    tags: List[str] = Field(default_factory=list)
    summary: str = ""

    @field_validator("tags")
    @classmethod
    def limit_tags(cls, tags: List[str]) -> List[str]:
        return tags[:MAX_TAGS]

    @property
    def is_default(self) -> bool:
        return self.sentiment == Sentiment.PENDING


def default_analysis() -> AnalysisResult:
    """Placeholder result for items the AI stage could not resolve."""
    return AnalysisResult(
        sentiment=Sentiment.PENDING,
        category=Category.UNCLASSIFIED,
        tags=[],
        summary=""
    )


EMPTY_CONTENT_ANALYSIS = AnalysisResult(
    sentiment=Sentiment.NEUTRAL,
    category=Category.UNCLASSIFIED,
    tags=[],
    summary="Empty feedback"
)


class FeedbackRecord(BaseModel):
    """Canonical feedback item. Replaced wholesale on enrichment, never mutated in place."""
    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str = ""
    user_name: str = "Anonymous"
    user_avatar: Optional[str] = None
    date: datetime
    content: str = ""
    rating: int = 3
    category: Category = Category.UNCLASSIFIED
    sentiment: Sentiment = Sentiment.PENDING
    tags: List[str] = Field(default_factory=list)
    ai_summary: Optional[str] = None
    status: FeedbackStatus = FeedbackStatus.NEW
    assigned_to: Optional[str] = None
    type: Optional[str] = None
    image_url: Optional[str] = None
    moments_text: Optional[str] = None
    user_type: Optional[str] = None
    content_type: Optional[int] = None
    app_version: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def pending_has_no_summary(cls, data):
        if isinstance(data, dict):
            sentiment = data.get("sentiment", Sentiment.PENDING)
            if sentiment == Sentiment.PENDING or not data.get("ai_summary"):
                data = {**data, "ai_summary": None}
        return data

    @field_validator("tags")
    @classmethod
    def limit_tags(cls, tags: List[str]) -> List[str]:
        return tags[:MAX_TAGS]

    @property
    def needs_analysis(self) -> bool:
        return self.sentiment == Sentiment.PENDING

    def with_analysis(self, result: AnalysisResult) -> "FeedbackRecord":
        """Return a copy carrying the enrichment verdict."""
        data = self.model_dump()
        data.update(
            sentiment=result.sentiment,
            category=result.category,
            tags=list(result.tags),
            ai_summary=result.summary or None
        )
        return FeedbackRecord.model_validate(data)


# ============================================================================
# AI RESPONSE MODELS
# ============================================================================

class FeedbackAnalysis(BaseModel):
    """Structured analysis the provider returns for one feedback."""
    sentiment: Literal["Positive", "Negative", "Neutral"] = Field(
        description="Overall sentiment of the feedback"
    )
    category: Literal["Bug Report", "Feature Request", "UX/UI", "Performance", "Other"] = Field(
        description="Best-fitting category"
    )
    tags: List[str] = Field(description="2-5 short relevant tags")
    summary: str = Field(min_length=1, description="One concise sentence summarizing the feedback")

    @field_validator("tags")
    @classmethod
    def limit_tags(cls, tags: List[str]) -> List[str]:
        return tags[:MAX_TAGS]

    def to_result(self) -> AnalysisResult:
        return AnalysisResult(
            sentiment=Sentiment(self.sentiment),
            category=Category(self.category),
            tags=self.tags,
            summary=self.summary
        )


class BatchFeedbackAnalysis(BaseModel):
    """Batch analysis results, one per input in input order."""
    results: List[FeedbackAnalysis]
