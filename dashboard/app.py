from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from playback_reporting.exceptions import ReportParameterError, StoreUnavailableError

from .routes import router

app = FastAPI(title="Playback Reporting", description="Jellyfin playback usage reports")
app.state.monitor = None

app.include_router(router)


@app.exception_handler(ReportParameterError)
async def report_parameter_error(request: Request, exc: ReportParameterError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(StoreUnavailableError)
async def store_unavailable_error(request: Request, exc: StoreUnavailableError):
    return JSONResponse(status_code=503, content={"detail": str(exc)})
