import logging

from fastapi import APIRouter

from shared.errors import ValidationError
from shared.responses import ok
from .generator import (
    AnswerExplainer,
    DistractorGenerator,
    DistractorRequest,
    ExplanationOption,
    ExplanationRequest,
)
from .schemas import ExplainAnswerIn, SuggestDistractorsIn

logger = logging.getLogger("ai-service")


def build_router(generator: DistractorGenerator, explainer: AnswerExplainer) -> APIRouter:
    router = APIRouter()

    @router.post("/suggest-distractors")
    def suggest_distractors(payload: SuggestDistractorsIn):
        result = generator.generate_distractors(DistractorRequest(
            question=payload.question,
            correct_answer=payload.correct_answer,
            num_distractors=payload.num_distractors,
        ))
        logger.info("Generated %d distractors", len(result.distractors))
        return ok({"distractors": result.distractors})

    @router.post("/explain-answer")
    def explain_answer(payload: ExplainAnswerIn):
        option_ids = {o.id for o in payload.options}
        if payload.correct_answer_id not in option_ids:
            raise ValidationError(
                "correctAnswerId is not one of the options.",
                field_errors={"correctAnswerId": ["Not one of the supplied options."]},
            )
        result = explainer.explain_answer(ExplanationRequest(
            question_text=payload.question_text,
            options=[ExplanationOption(id=o.id, text=o.text) for o in payload.options],
            correct_answer_id=payload.correct_answer_id,
            selected_answer_id=payload.selected_answer_id,
        ))
        return ok({"explanation": result.explanation})

    return router
