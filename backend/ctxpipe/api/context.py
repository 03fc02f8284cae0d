from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from ctxpipe.core.security import TextTooLong, validate_text
from ctxpipe.schemas.context import (
    AssembleRequest,
    AssembleResponse,
    ClassifyRequest,
    ClassifyResponse,
)
from ctxpipe.services.context_assembler import (
    ContextAssembler,
    NoActiveHistoryKey,
    get_context_assembler,
)
from ctxpipe.services.fragment_cache import CacheBuildFailure

MAX_UTTERANCE_LEN = 8000

router = APIRouter(prefix="/api/context", tags=["context"])


@router.post("/assemble", response_model=AssembleResponse)
async def assemble_context(
    payload: AssembleRequest,
    assembler: ContextAssembler = Depends(get_context_assembler),
) -> AssembleResponse:
    """Assemble the bounded prompt payload for one conversation turn."""

    utterance = _clean_utterance(payload.utterance)
    key = payload.key.to_key() if payload.key else None
    try:
        result = await assembler.assemble(utterance, payload.category, payload.budget, key=key)
    except NoActiveHistoryKey as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except CacheBuildFailure as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)
        ) from exc

    messages = assembler.prompt_builder.build_messages(result)
    return AssembleResponse.from_payload(result, messages)


@router.post("/classify", response_model=ClassifyResponse)
async def classify_utterance(
    payload: ClassifyRequest,
    assembler: ContextAssembler = Depends(get_context_assembler),
) -> ClassifyResponse:
    """Classify an utterance into question/create/update."""

    utterance = _clean_utterance(payload.utterance)
    key = payload.key.to_key() if payload.key else None
    try:
        decision = await assembler.classify(utterance, key=key)
    except NoActiveHistoryKey as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return ClassifyResponse(
        category=decision.category, ambiguous=decision.ambiguous, reason=decision.reason
    )


def _clean_utterance(raw: str) -> str:
    try:
        return validate_text(raw, MAX_UTTERANCE_LEN)
    except TextTooLong as exc:
        raise HTTPException(status_code=413, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Utterance must not be empty"
        ) from exc
