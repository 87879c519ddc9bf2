from datetime import datetime

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from church_library.core.config import configure_logging
from church_library.core.database import Base, engine
from church_library.core.errors import LendingError, ValidationFailure
from church_library.api import routes

configure_logging()
Base.metadata.create_all(bind=engine)
app = FastAPI(title="Church Library Administration")
app.include_router(routes.router)


@app.exception_handler(LendingError)
async def lending_error_handler(request: Request, exc: LendingError):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.code, "detail": exc.detail})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=ValidationFailure.status_code,
        content={"error": ValidationFailure.code, "detail": jsonable_encoder(exc.errors())},
    )


@app.get("/health")
def health():
    return {"status": "ok", "time": datetime.utcnow().isoformat()}
