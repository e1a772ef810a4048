import logging
import random
import uuid
from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, Query, Request
from sqlalchemy.orm import Session

from ai_service.generator import AnswerExplainer, ExplanationOption, ExplanationRequest
from shared.database import db_dependency
from shared.errors import NotFoundError, UnauthorizedError, ValidationError
from shared.responses import fail, ok
from . import quiz_logic, srs
from .authoring import (
    QuestionPatch,
    UNSET,
    draft_from_text_answer,
    export_batch_text,
    iter_batch_lines,
    parse_batch_item,
    parse_batch_line,
)
from .category_tree import build_category_tree, get_full_category_path
from .crud import (
    create_category,
    create_session,
    delete_category,
    delete_question,
    get_all_categories,
    get_questions_by_category,
    get_questions_by_category_and_descendants,
    get_questions_by_ids,
    get_session,
    import_questions,
    list_category_stats,
    list_performances,
    record_answer,
    add_question,
    require_category,
    require_question,
    save_session,
    update_category_name,
    update_question,
)
from .schemas import (
    AnswerQuestionIn,
    BatchTextIn,
    CategoryCreateIn,
    CategoryOut,
    CategoryUpdateIn,
    OptionOut,
    QuestionCreateIn,
    QuestionOut,
    QuestionUpdateIn,
    StartQuizIn,
    StartReviewIn,
    WeakSpotQuizIn,
)

logger = logging.getLogger("quiz-service")


def category_out(c, categories) -> dict:
    return CategoryOut(
        id=c.id,
        name=c.name,
        parent_id=c.parent_id,
        full_path=get_full_category_path(c.id, categories),
    ).model_dump(by_alias=True)


def question_out(q) -> dict:
    return QuestionOut(
        id=q.id,
        text=q.text,
        options=[OptionOut(id=o.id, text=o.text) for o in q.options],
        correct_answer_id=q.correct_answer_id,
        category_id=q.category_id,
        explanation=q.explanation,
        source=q.source,
    ).model_dump(by_alias=True)


def current_user_id(request: Request) -> Optional[str]:
    # set by the gateway auth middleware from the verified token
    uid = (request.headers.get("X-User-ID") or "").strip()
    return uid or None


def require_user_id(request: Request) -> str:
    uid = current_user_id(request)
    if not uid:
        raise UnauthorizedError("Unauthorized: A user identity is required.")
    return uid


def weak_spots_for(db: Session, user_id: str, limit: int) -> list[srs.WeakSpot]:
    performances = list_performances(db, user_id)
    questions = get_questions_by_ids(db, [p.question_id for p in performances])
    names = {c.id: c.name for c in get_all_categories(db)}
    return srs.identify_weak_spots(performances, questions, names, limit)


def build_router(
    SessionLocal,
    explainer: AnswerExplainer,
    clock: quiz_logic.Clock = quiz_logic.system_clock,
    rng: Optional[random.Random] = None,
) -> APIRouter:
    router = APIRouter()
    get_db = db_dependency(SessionLocal)
    rng = rng or random.SystemRandom()

    # -------------------------
    # Categories
    # -------------------------

    @router.get("/categories", tags=["Categories"])
    def list_categories(format: str = Query(default="flat", pattern="^(flat|tree)$"), db: Session = Depends(get_db)):
        categories = get_all_categories(db)
        if format == "tree":
            return ok([node.as_dict() for node in build_category_tree(categories)])
        return ok([category_out(c, categories) for c in categories])

    @router.post("/categories", tags=["Categories"])
    def add_category(payload: CategoryCreateIn, db: Session = Depends(get_db)):
        c = create_category(db, payload.name, payload.parent_id)
        return ok({"id": c.id}, status_code=201)

    @router.get("/categories/{category_id}", tags=["Categories"])
    def get_one_category(category_id: str, db: Session = Depends(get_db)):
        c = require_category(db, category_id)
        return ok(category_out(c, get_all_categories(db)))

    @router.put("/categories/{category_id}", tags=["Categories"])
    def rename_category(category_id: str, payload: CategoryUpdateIn, db: Session = Depends(get_db)):
        c = update_category_name(db, category_id, payload.name)
        return ok({"id": c.id, "name": c.name})

    @router.delete("/categories/{category_id}", tags=["Categories"])
    def remove_category(category_id: str, db: Session = Depends(get_db)):
        counts = delete_category(db, category_id)
        return ok({
            "message": f"Category {category_id} and all its contents deleted successfully.",
            "deletedCategories": counts["categories"],
            "deletedQuestions": counts["questions"],
        })

    # -------------------------
    # Questions
    # -------------------------

    @router.get("/categories/{category_id}/questions", tags=["Questions"])
    def list_category_questions(
        category_id: str,
        include_subcategories: bool = Query(default=False, alias="includeSubcategories"),
        db: Session = Depends(get_db),
    ):
        require_category(db, category_id)
        if include_subcategories:
            qs = get_questions_by_category_and_descendants(db, category_id)
        else:
            qs = get_questions_by_category(db, category_id)
        return ok([question_out(q) for q in qs])

    @router.post("/categories/{category_id}/questions", tags=["Questions"])
    def create_question(category_id: str, payload: QuestionCreateIn, db: Session = Depends(get_db)):
        require_category(db, category_id)
        draft = draft_from_text_answer(
            text=payload.text,
            options=payload.options,
            correct_answer_text=payload.correct_answer_text,
            category_id=category_id,
            explanation=payload.explanation,
            source=payload.source,
        )
        q = add_question(db, draft)
        return ok({"id": q.id}, status_code=201)

    def _batch_response(report):
        data = report.as_dict()
        if report.status_code == 400:
            return fail("Batch processing failed for all items.", 400, data=data)
        if report.status_code == 207:
            return ok(data, status_code=207, message="Partial success")
        return ok(data, status_code=201)

    @router.post("/categories/{category_id}/questions/batch", tags=["Questions"])
    def batch_add_text(category_id: str, payload: BatchTextIn, db: Session = Depends(get_db)):
        report = import_questions(db, category_id, iter_batch_lines(payload.text), parse_batch_line)
        return _batch_response(report)

    @router.post("/categories/{category_id}/questions/batch/json", tags=["Questions"])
    def batch_add_json(category_id: str, items: list[Any] = Body(...), db: Session = Depends(get_db)):
        report = import_questions(db, category_id, items, parse_batch_item)
        return _batch_response(report)

    @router.get("/categories/{category_id}/questions/export", tags=["Questions"])
    def export_questions(category_id: str, db: Session = Depends(get_db)):
        categories = get_all_categories(db)
        if not any(c.id == category_id for c in categories):
            raise NotFoundError("Category not found.")
        qs = get_questions_by_category_and_descendants(db, category_id, categories)
        if not qs:
            return ok({"formattedText": ""}, message="No questions found to export.")
        return ok({"formattedText": export_batch_text(qs)})

    @router.get("/questions/{question_id}", tags=["Questions"])
    def get_one_question(question_id: str, db: Session = Depends(get_db)):
        return ok(question_out(require_question(db, question_id)))

    @router.put("/questions/{question_id}", tags=["Questions"])
    def edit_question(question_id: str, payload: QuestionUpdateIn, db: Session = Depends(get_db)):
        sent = payload.model_fields_set
        patch = QuestionPatch(
            text=payload.text if "text" in sent else UNSET,
            options=[o.model_dump() for o in payload.options] if payload.options is not None else UNSET,
            correct_answer_id=payload.correct_answer_id if "correct_answer_id" in sent else UNSET,
            category_id=payload.category_id if "category_id" in sent else UNSET,
            explanation=payload.explanation if "explanation" in sent else UNSET,
            source=payload.source if "source" in sent else UNSET,
        )
        q = update_question(db, question_id, patch)
        return ok({"id": q.id})

    @router.delete("/questions/{question_id}", tags=["Questions"])
    def remove_question(question_id: str, db: Session = Depends(get_db)):
        delete_question(db, question_id)
        return ok({"message": f"Question {question_id} deleted successfully."})

    # -------------------------
    # Quiz sessions
    # -------------------------

    def _start_over(db: Session, request: Request, questions, category_id: str, category_name: str,
                    question_count: Optional[int] = None):
        record = quiz_logic.build_session(
            session_id=str(uuid.uuid4()),
            category_id=category_id,
            category_name=category_name,
            questions=[quiz_logic.QuestionSnapshot.from_question(q) for q in questions],
            now=clock(),
            rng=rng,
            question_count=question_count,
            user_id=current_user_id(request),
        )
        create_session(db, record)
        logger.info("Started quiz %s over %d questions (%s)", record.id, record.total_questions, record.category_name)

        first = record.current_question
        return ok({
            "quizId": record.id,
            "totalQuestions": record.total_questions,
            "categoryName": record.category_name,
            "firstQuestion": first.public_view() if first else None,
        })

    @router.post("/quizzes", tags=["Quizzes"])
    def start_quiz(payload: StartQuizIn, request: Request, db: Session = Depends(get_db)):
        categories = get_all_categories(db)

        if payload.random:
            seen: set[str] = set()
            pool = []
            for root in build_category_tree(categories):
                for q in get_questions_by_category_and_descendants(db, root.id, categories):
                    if q.id not in seen:
                        seen.add(q.id)
                        pool.append(q)
            category_id = quiz_logic.RANDOM_CATEGORY_ID
            category_name = "Random Quiz"
        elif payload.category_id:
            require_category(db, payload.category_id)
            pool = get_questions_by_category_and_descendants(db, payload.category_id, categories)
            category_id = payload.category_id
            category_name = get_full_category_path(payload.category_id, categories)
        else:
            raise ValidationError(
                "Either categoryId or random=true must be provided.",
                field_errors={"categoryId": ["Either categoryId or random=true must be provided."]},
            )

        return _start_over(db, request, pool, category_id, category_name, payload.question_count)

    @router.post("/quizzes/weak-spots", tags=["Quizzes"])
    def start_weak_spot_quiz(
        request: Request,
        payload: Optional[WeakSpotQuizIn] = None,
        db: Session = Depends(get_db),
    ):
        user_id = require_user_id(request)
        payload = payload or WeakSpotQuizIn()
        spots = weak_spots_for(db, user_id, payload.question_count)
        if not spots:
            raise NotFoundError("No weak spots found. Keep practising!")
        by_id = get_questions_by_ids(db, [s.question_id for s in spots])
        return _start_over(db, request, [by_id[s.question_id] for s in spots],
                           srs.WEAK_SPOTS_CATEGORY_ID, "Weak Spots")

    @router.get("/quizzes/{quiz_id}", tags=["Quizzes"])
    def quiz_status(quiz_id: str, request: Request, db: Session = Depends(get_db)):
        session = get_session(db, quiz_id)
        return ok(quiz_logic.status_view(session, current_user_id(request)))

    @router.post("/quizzes/{quiz_id}/answer", tags=["Quizzes"])
    def answer_question(quiz_id: str, payload: AnswerQuestionIn, request: Request, db: Session = Depends(get_db)):
        session = get_session(db, quiz_id)
        updated, outcome = quiz_logic.submit_answer(
            session,
            payload.question_id,
            payload.selected_answer_id,
            now=clock(),
            requester_id=current_user_id(request),
        )
        save_session(db, updated)
        if outcome.is_complete:
            logger.info("Quiz %s completed", quiz_id)

        user_id = current_user_id(request)
        if user_id:
            answered = session.question(payload.question_id)
            record_answer(
                db,
                user_id,
                answered.id,
                answered.category_id,
                outcome.is_correct,
                now=clock(),
                confidence=payload.confidence or srs.SURE,
            )
        return ok(outcome.as_dict())

    @router.post("/quizzes/{quiz_id}/pause", tags=["Quizzes"])
    def pause_quiz(quiz_id: str, request: Request, db: Session = Depends(get_db)):
        session = get_session(db, quiz_id)
        updated = quiz_logic.pause(session, now=clock(), requester_id=current_user_id(request))
        save_session(db, updated)
        logger.info("Quiz %s paused", quiz_id)
        return ok({"message": "Quiz paused successfully.", "status": updated.status})

    @router.post("/quizzes/{quiz_id}/resume", tags=["Quizzes"])
    def resume_quiz(quiz_id: str, request: Request, db: Session = Depends(get_db)):
        session = get_session(db, quiz_id)
        updated = quiz_logic.resume(session, now=clock(), requester_id=current_user_id(request))
        save_session(db, updated)
        logger.info("Quiz %s resumed, paused %d ms in total", quiz_id, updated.total_paused_time)
        return ok({"message": "Quiz resumed successfully.", "status": updated.status})

    @router.get("/quizzes/{quiz_id}/results", tags=["Quizzes"])
    def quiz_results(quiz_id: str, request: Request, db: Session = Depends(get_db)):
        session = get_session(db, quiz_id)
        return ok(quiz_logic.results(session, current_user_id(request)).as_dict())

    @router.post("/quizzes/{quiz_id}/questions/{question_id}/explanation", tags=["Quizzes"])
    def explain_quiz_answer(quiz_id: str, question_id: str, request: Request, db: Session = Depends(get_db)):
        session = get_session(db, quiz_id)
        question, answer = quiz_logic.reviewable_question(session, question_id, current_user_id(request))
        if question.explanation:
            return ok({"explanation": question.explanation, "generated": False})

        selected = answer.selected_answer_id if answer and not answer.skipped else None
        result = explainer.explain_answer(ExplanationRequest(
            question_text=question.text,
            options=[ExplanationOption(id=o.id, text=o.text) for o in question.options],
            correct_answer_id=question.correct_answer_id,
            selected_answer_id=selected,
        ))
        return ok({"explanation": result.explanation, "generated": True})

    # -------------------------
    # Review deck and analytics
    # -------------------------

    def _due(db: Session, user_id: str):
        due = srs.due_queue(list_performances(db, user_id), clock())
        questions = get_questions_by_ids(db, [p.question_id for p in due])
        return [(p, questions[p.question_id]) for p in due if p.question_id in questions]

    @router.get("/review/due", tags=["Review"])
    def review_queue(
        request: Request,
        limit: int = Query(default=20, gt=0, le=100),
        db: Session = Depends(get_db),
    ):
        due = _due(db, require_user_id(request))
        return ok({
            "totalDue": len(due),
            "questions": [
                {
                    **quiz_logic.QuestionSnapshot.from_question(q).public_view(),
                    "categoryId": q.category_id,
                    "nextReview": p.next_review,
                }
                for p, q in due[:limit]
            ],
        })

    @router.post("/review/sessions", tags=["Review"])
    def start_review(
        request: Request,
        payload: Optional[StartReviewIn] = None,
        db: Session = Depends(get_db),
    ):
        payload = payload or StartReviewIn()
        due = _due(db, require_user_id(request))[: payload.max_questions]
        if not due:
            raise NotFoundError("No questions are due for review.")
        return _start_over(db, request, [q for _, q in due], srs.REVIEW_CATEGORY_ID, "Review Deck")

    @router.get("/analytics", tags=["Analytics"])
    def analytics(request: Request, db: Session = Depends(get_db)):
        user_id = require_user_id(request)
        names = {c.id: c.name for c in get_all_categories(db)}
        # analytics for deleted categories are kept but not reported
        stats = [s for s in list_category_stats(db, user_id) if s.category_id in names]
        return ok({
            "categories": [s.as_dict(names[s.category_id]) for s in stats],
            "overall": srs.overall_stats(stats),
        })

    @router.get("/analytics/weak-spots", tags=["Analytics"])
    def weak_spots(
        request: Request,
        limit: int = Query(default=5, gt=0, le=100),
        db: Session = Depends(get_db),
    ):
        spots = weak_spots_for(db, require_user_id(request), limit)
        return ok([s.as_dict() for s in spots])

    return router
