"""Human question route registration for the runtime API."""

from __future__ import annotations

from typing import Any, Literal, Optional

from fastapi import APIRouter, HTTPException, Query

from .deps import RouteDeps
from .schemas import AnswerQuestionRequest


def register_question_routes(router: APIRouter, deps: RouteDeps) -> None:
    """Register routes for answering and dismissing orchestrator questions."""
    @router.get("/questions")
    async def list_questions(
        status: Optional[Literal["pending", "answered", "dismissed"]] = Query(None),
        project_dir: Optional[str] = Query(None),
    ) -> dict[str, Any]:
        runtime = deps.resolve_runtime(project_dir)
        questions = runtime.dispatcher.questions.list()
        if status is not None:
            questions = [q for q in questions if q.status == status]
        return {"questions": [q.to_dict() for q in questions]}

    @router.post("/questions/{question_id}/answer")
    async def answer_question(
        question_id: str,
        body: AnswerQuestionRequest,
        project_dir: Optional[str] = Query(None),
    ) -> dict[str, Any]:
        """Answer a pending question and queue the answer for the orchestrator.

        Args:
            question_id: Identifier of the pending question.
            body: Answer payload.
            project_dir: Optional project directory used to resolve runtime state.

        Returns:
            A payload containing the queued ``human_response`` event.

        Raises:
            HTTPException: 404 when the question is unknown, 400 when it is
                already resolved.
        """
        runtime = deps.resolve_runtime(project_dir)
        try:
            event = runtime.dispatcher.answer_question(question_id, body.answer)
        except KeyError:
            raise HTTPException(status_code=404, detail=f"Question not found: {question_id}")
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc))
        return {"event": event.to_dict()}

    @router.post("/questions/{question_id}/dismiss")
    async def dismiss_question(question_id: str, project_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        runtime = deps.resolve_runtime(project_dir)
        try:
            question = runtime.dispatcher.questions.dismiss(question_id)
        except KeyError:
            raise HTTPException(status_code=404, detail=f"Question not found: {question_id}")
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc))
        return {"question": question.to_dict()}
