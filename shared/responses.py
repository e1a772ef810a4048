from typing import Any, Optional

from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse


def ok(data: Any = None, status_code: int = 200, message: Optional[str] = None) -> JSONResponse:
    body: dict[str, Any] = {"success": True, "data": jsonable_encoder(data)}
    if message:
        body["message"] = message
    return JSONResponse(status_code=status_code, content=body)


def fail(error: Any, status_code: int, data: Any = None) -> JSONResponse:
    body: dict[str, Any] = {"success": False, "error": jsonable_encoder(error)}
    if data is not None:
        body["data"] = jsonable_encoder(data)
    return JSONResponse(status_code=status_code, content=body)
