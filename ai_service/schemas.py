from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SuggestDistractorsIn(CamelModel):
    question: str = Field(min_length=1)
    correct_answer: str = Field(min_length=1)
    num_distractors: int = Field(default=3, ge=1, le=10)


class ExplainOptionIn(CamelModel):
    id: str
    text: str


class ExplainAnswerIn(CamelModel):
    question_text: str = Field(min_length=1)
    options: list[ExplainOptionIn] = Field(min_length=2)
    correct_answer_id: str = Field(min_length=1)
    selected_answer_id: Optional[str] = None
