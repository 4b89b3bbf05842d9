"""
RAG Facade - the single entry point for callers.

    from legal_rag.rag import answer_question

    handle = await init_runtime()
    response = await answer_question(handle, "What is the notice period?")

Flow:
    sanitize question/history -> Pipeline.invoke -> audit event -> response

Every request produces exactly one audit event: an answer, a refusal
(validation rejected it) or an error (a provider or deadline failed, or
an unexpected exception, logged as INTERNAL_ERROR).
Errors are re-raised unchanged for the caller to handle.
"""

from __future__ import annotations

from .audit_log import RequestTimer, generate_request_id, log_answer, log_rejection
from .errors import HallucinationError, InvalidQuestionError, RagError
from .pipeline import PipelineRequest, PipelineResponse
from .runtime import RagHandle
from .security import sanitize_history, sanitize_question

__all__ = ["answer_question"]


async def answer_question(
    handle: RagHandle,
    question: str,
    session_id: str = "",
    document_id: str | None = None,
    history: list[dict[str, str]] | None = None,
) -> PipelineResponse:
    """
    Answer a question from the indexed legal documents.

    Args:
        handle: Runtime built by init_runtime()
        question: User's question
        session_id: Caller's session identifier (audit only)
        document_id: Restrict retrieval to one document
        history: Optional conversation turns [{"role", "content"}]

    Returns:
        PipelineResponse with a validated, cited answer

    Raises:
        InvalidQuestionError: empty question or injection attempt
        RagError: any other pipeline failure (see errors.py)
    """
    cfg = handle.settings
    request_id = generate_request_id()
    doc_id = document_id or ""

    timer = RequestTimer()
    try:
        with timer:
            clean = sanitize_question(question, cfg.max_question_len)
            if not clean:
                raise InvalidQuestionError("Question is empty or was rejected")

            response = await handle.pipeline.invoke(
                PipelineRequest(
                    question=clean,
                    session_id=session_id or None,
                    document_id=document_id,
                    history=sanitize_history(history, cfg.max_question_len),
                )
            )
    except RagError as e:
        log_rejection(
            request_id=request_id,
            session_id=session_id,
            doc_id=doc_id,
            error_code=e.code,
            latency_ms=timer.elapsed_ms,
            model=cfg.openai_chat_model,
            confidence=e.confidence if isinstance(e, HallucinationError) else 0.0,
        )
        raise
    except Exception:
        log_rejection(
            request_id=request_id,
            session_id=session_id,
            doc_id=doc_id,
            error_code="INTERNAL_ERROR",
            latency_ms=timer.elapsed_ms,
            model=cfg.openai_chat_model,
        )
        raise

    response.metadata["request_id"] = request_id
    log_answer(
        request_id=request_id,
        session_id=session_id,
        doc_id=doc_id,
        source_count=len(response.sources),
        latency_ms=timer.elapsed_ms,
        model=cfg.openai_chat_model,
    )
    return response
