import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse, StreamingResponse

from .database import SessionLocal, engine, init_db
from .errors import AnalysisNotFound, PreconditionFailed
from .models import AnalysisCreated, AnalysisRecord, AnalysisRequest, AnalysisResults
from .ollama_client import OLLAMA_MODEL, OllamaClient
from .orchestrator import build_pipeline
from .progress import format_sse, is_terminal
from .reports import delete_analysis, get_analysis_results, list_analyses, render_markdown

load_dotenv()

# ── configurable via .env ──
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*").split(",")
DEFAULT_ORGANIZATION_ID = int(os.getenv("DEFAULT_ORGANIZATION_ID", "1"))
API_HOST = os.getenv("API_HOST", "127.0.0.1")
API_PORT = int(os.getenv("API_PORT", "8000"))

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db(app.state.engine)
    await app.state.pipeline.orchestrator.recover_interrupted()
    logger.info("Evidence analyzer ready (model %s)", OLLAMA_MODEL)
    yield


app = FastAPI(title="Evidence Analyzer (Ollama)", version="1.0.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS, allow_credentials=True,
    allow_methods=["*"], allow_headers=["*"],
)
app.state.engine = engine
app.state.pipeline = build_pipeline(SessionLocal, OllamaClient())


@app.get("/health")
async def health():
    return {"status": "ok", "ollama_model": OLLAMA_MODEL}


@app.post("/analyses", response_model=AnalysisCreated, status_code=status.HTTP_202_ACCEPTED)
async def create_analysis(req: AnalysisRequest, request: Request, organization_id: int = DEFAULT_ORGANIZATION_ID):
    """Validate the request and start the analysis in the background."""
    orchestrator = request.app.state.pipeline.orchestrator
    try:
        job_id = await orchestrator.start_analysis(organization_id, req)
    except PreconditionFailed as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))
    return AnalysisCreated(jobId=job_id)


@app.get("/analyses", response_model=list[AnalysisRecord])
async def get_analyses(request: Request, organization_id: int = DEFAULT_ORGANIZATION_ID):
    return await list_analyses(request.app.state.pipeline.store, organization_id)


@app.get("/analyses/{analysis_id}", response_model=AnalysisResults)
async def get_analysis(analysis_id: int, request: Request):
    try:
        return await get_analysis_results(request.app.state.pipeline.store, analysis_id)
    except AnalysisNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


@app.get("/analyses/{analysis_id}/report.md", response_class=PlainTextResponse)
async def get_analysis_report(analysis_id: int, request: Request):
    try:
        results = await get_analysis_results(request.app.state.pipeline.store, analysis_id)
    except AnalysisNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    return PlainTextResponse(render_markdown(results), media_type="text/markdown")


@app.delete("/analyses/{analysis_id}")
async def remove_analysis(analysis_id: int, request: Request):
    pipeline = request.app.state.pipeline
    try:
        await delete_analysis(pipeline.store, analysis_id)
    except AnalysisNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    pipeline.progress.evict(analysis_id)
    return {"success": True}


# ============== Progress Stream ==============

@app.get("/analyses/{analysis_id}/progress")
async def stream_progress(analysis_id: int, request: Request) -> StreamingResponse:
    """Server-sent progress events; closes after a terminal state is sent."""
    subscription = request.app.state.pipeline.progress.subscribe(analysis_id)

    async def events():
        try:
            async for state in subscription:
                yield format_sse(state)
                if is_terminal(state):
                    break
        finally:
            subscription.close()

    return StreamingResponse(
        events(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("evidence_analyzer.main:app", host=API_HOST, port=API_PORT)
