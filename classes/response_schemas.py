# classes/response_schemas.py
"""
Declared shapes of the marketing-copy responses we ask the model for.
"""
from enum import Enum
from typing import Annotated, Dict, List, Optional

from pydantic import BaseModel, Field

from classes.response_validation import permissive_shape, strict_shape


class EmailContent(BaseModel):
    emailNumber: int = Field(ge=1, le=5)
    subject: str = Field(min_length=1)
    body: str = Field(min_length=1)


class EmailSequenceResponse(BaseModel):
    emails: Annotated[List[EmailContent], Field(min_length=5, max_length=5)]


class CoachingLevel(str, Enum):
    NEEDS_MORE_DETAIL = "needs-more-detail"
    GOOD_START = "good-start"
    EXCELLENT_DEPTH = "excellent-depth"


class InteractiveCoachingResponse(BaseModel):
    level: CoachingLevel
    levelDescription: str
    feedback: str
    followUpQuestions: List[str]
    interactivePrompts: List[str]
    examples: List[str]
    nextSteps: List[str]
    encouragement: str
    conversationalResponse: str


class ScriptItem(BaseModel):
    title: str
    content: str


class VideoScriptOutput(BaseModel):
    script1: ScriptItem
    script2: ScriptItem
    script3: ScriptItem


class CategoryScore(BaseModel):
    score: float = Field(ge=0, le=10)
    reasoning: str


class CoachingEvaluation(BaseModel):
    qualityScore: float = Field(ge=0, le=100)
    categoryScores: Optional[Dict[str, CategoryScore]] = None
    coachingFeedback: str
    strongPoints: Optional[List[str]] = None
    needsWork: Optional[List[str]] = None
    needsRewrite: bool
    recommendedRewrite: Optional[str] = None


class RewriteResult(BaseModel):
    rewrittenContent: str = Field(min_length=1)
    changesSummary: Optional[str] = None


EMAIL_SEQUENCE_SHAPE = strict_shape(EmailSequenceResponse)
COACHING_RESPONSE_SHAPE = strict_shape(InteractiveCoachingResponse)
VIDEO_SCRIPT_SHAPE = strict_shape(VideoScriptOutput)
COACHING_EVALUATION_SHAPE = strict_shape(CoachingEvaluation)
REWRITE_RESULT_SHAPE = strict_shape(RewriteResult)
# transcript parser: question key -> answer text
PARSED_ANSWERS_SHAPE = strict_shape(Dict[str, str], name="parsed_answers")
JSON_OBJECT_SHAPE = permissive_shape()
