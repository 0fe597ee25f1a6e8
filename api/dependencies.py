"""Request parsing helpers shared by the guarded routes.

Guarded endpoints receive the raw ``Request`` (the security pipeline owns
the call signature), so bodies are parsed and validated here instead of
through FastAPI's parameter injection.
"""

import json
from typing import Type, TypeVar

from fastapi import HTTPException, Request, status
from pydantic import BaseModel, ValidationError

ModelT = TypeVar("ModelT", bound=BaseModel)

MAX_ERROR_ITEMS = 20


def _public_errors(exc: ValidationError) -> list:
    # Drop "input" and "ctx" so submitted passwords and codes are never echoed
    return [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg", ""), "type": err.get("type", "")}
        for err in exc.errors()[:MAX_ERROR_ITEMS]
    ]


async def parse_body(request: Request, model: Type[ModelT]) -> ModelT:
    """Decode the JSON body into ``model`` or raise a 422 HTTPException."""
    raw = await request.body()
    try:
        payload = json.loads(raw) if raw else {}
    except (ValueError, UnicodeDecodeError):
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Request body must be valid JSON",
        )

    try:
        return model.model_validate(payload)
    except ValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=_public_errors(e),
        )
