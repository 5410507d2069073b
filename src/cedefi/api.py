"""
Request handling shared by the ledger and bank FastAPI apps.
"""
from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """
    422 without echoing the rejected input, which may hold values JSON cannot
    carry (1e309 parses to inf).
    """
    errors = [{key: value for key, value in error.items() if key != "input"} for error in exc.errors()]
    return JSONResponse(status_code=422, content={"detail": jsonable_encoder(errors)})
