from typing import Optional

from sqlalchemy import BigInteger, Float, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from shared.database import Base


class Category(Base):
    __tablename__ = "category"
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(String(255))
    parent_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("category.id"), index=True, nullable=True)


class Question(Base):
    __tablename__ = "question"
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    text: Mapped[str] = mapped_column(Text)
    category_id: Mapped[str] = mapped_column(String(36), ForeignKey("category.id"), index=True)
    correct_answer_id: Mapped[str] = mapped_column(String(36))
    explanation: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    source: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    options: Mapped[list["AnswerOption"]] = relationship(
        order_by="AnswerOption.position",
        cascade="all, delete-orphan",
        lazy="selectin",
    )


class AnswerOption(Base):
    __tablename__ = "answer_option"
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    question_id: Mapped[str] = mapped_column(String(36), ForeignKey("question.id"), primary_key=True)
    text: Mapped[str] = mapped_column(Text)
    position: Mapped[int] = mapped_column(Integer, default=0)


class QuizSession(Base):
    __tablename__ = "quiz_session"
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    category_id: Mapped[str] = mapped_column(String(64), index=True)
    category_name: Mapped[str] = mapped_column(String(1024), default="")

    # question snapshot and answers are stored as JSON documents
    questions_json: Mapped[str] = mapped_column(Text, default="[]")
    answers_json: Mapped[str] = mapped_column(Text, default="[]")

    current_question_index: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[str] = mapped_column(String(20), default="active")  # active/paused/completed
    user_id: Mapped[Optional[str]] = mapped_column(String(128), index=True, nullable=True)

    # epoch milliseconds
    start_time: Mapped[int] = mapped_column(BigInteger)
    end_time: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    pause_time: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    total_paused_time: Mapped[int] = mapped_column(BigInteger, default=0)

    version: Mapped[int] = mapped_column(Integer, default=0)


class QuestionPerformance(Base):
    __tablename__ = "question_performance"
    __table_args__ = (UniqueConstraint("user_id", "question_id", name="uq_performance_user_question"),)
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), index=True)
    # no foreign key: history outlives deleted questions and is filtered on read
    question_id: Mapped[str] = mapped_column(String(36), index=True)
    category_id: Mapped[str] = mapped_column(String(36), index=True)

    ease_factor: Mapped[float] = mapped_column(Float, default=2.5)
    interval_days: Mapped[float] = mapped_column(Float, default=0.0)
    repetitions: Mapped[int] = mapped_column(Integer, default=0)
    total_attempts: Mapped[int] = mapped_column(Integer, default=0)
    correct_attempts: Mapped[int] = mapped_column(Integer, default=0)
    incorrect_attempts: Mapped[int] = mapped_column(Integer, default=0)
    confidence_history_json: Mapped[str] = mapped_column(Text, default="[]")

    # epoch milliseconds
    next_review: Mapped[int] = mapped_column(BigInteger, index=True)
    last_reviewed: Mapped[int] = mapped_column(BigInteger)


class CategoryAnalytics(Base):
    __tablename__ = "category_analytics"
    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    category_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    total_questions: Mapped[int] = mapped_column(Integer, default=0)
    mastered_questions: Mapped[int] = mapped_column(Integer, default=0)
    struggling_questions: Mapped[int] = mapped_column(Integer, default=0)
    average_accuracy: Mapped[float] = mapped_column(Float, default=0.0)
    last_updated: Mapped[int] = mapped_column(BigInteger)
