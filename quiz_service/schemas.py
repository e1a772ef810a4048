from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# Categories
class CategoryCreateIn(CamelModel):
    name: str = Field(min_length=1)
    parent_id: Optional[str] = None


class CategoryUpdateIn(CamelModel):
    name: str = Field(min_length=1)


class CategoryOut(CamelModel):
    id: str
    name: str
    parent_id: Optional[str] = None
    full_path: str = ""


# Questions
class OptionIn(CamelModel):
    id: str = Field(min_length=1)
    text: str = Field(min_length=1)


class OptionOut(CamelModel):
    id: str
    text: str


class QuestionCreateIn(CamelModel):
    text: str = Field(min_length=5)
    options: list[str] = Field(min_length=2)
    correct_answer_text: str = Field(min_length=1)
    explanation: Optional[str] = None
    source: Optional[str] = None


class QuestionUpdateIn(CamelModel):
    text: Optional[str] = Field(default=None, min_length=5)
    options: Optional[list[OptionIn]] = Field(default=None, min_length=2)
    correct_answer_id: Optional[str] = None
    category_id: Optional[str] = None
    explanation: Optional[str] = None
    source: Optional[str] = None


class QuestionOut(CamelModel):
    id: str
    text: str
    options: list[OptionOut]
    correct_answer_id: str
    category_id: str
    explanation: Optional[str] = None
    source: Optional[str] = None


class BatchTextIn(CamelModel):
    text: str = Field(min_length=1)


# Quizzes
class StartQuizIn(CamelModel):
    category_id: Optional[str] = None
    random: bool = False
    question_count: Optional[int] = Field(default=None, gt=0)


class AnswerQuestionIn(CamelModel):
    question_id: str = Field(min_length=1)
    selected_answer_id: str = Field(min_length=1)
    # 1 = guess, 2 = unsure, 3 = sure, 4 = knew it
    confidence: Optional[int] = Field(default=None, ge=1, le=4)


# Review and analytics
class StartReviewIn(CamelModel):
    max_questions: int = Field(default=20, gt=0, le=100)


class WeakSpotQuizIn(CamelModel):
    question_count: int = Field(default=10, gt=0, le=100)
