"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

import config
from routes.merge import router as merge_router
from routes.process import router as process_router
from services.batch_orchestrator import BatchOrchestrator
from services.ocr_engine import EngineFactory, OcrService, PaddleOcrEngine
from services.stage_pipeline import StagePipeline
from workers.processor import PdfProcessor

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("pdfbatch")


def create_app(engine_factory: Optional[EngineFactory] = None) -> FastAPI:
    """Build the application. Each app owns its own OCR service and queue."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        async with OcrService(engine_factory or PaddleOcrEngine, language=config.OCR_LANGUAGE) as ocr:
            pipeline = StagePipeline(ocr)
            processor = PdfProcessor(pipeline, max_concurrent=config.MAX_CONCURRENT_OPERATIONS)
            app.state.processor = processor
            app.state.orchestrator = BatchOrchestrator(pipeline)
            logger.info(
                "Processing services started (max concurrent operations=%d).",
                config.MAX_CONCURRENT_OPERATIONS,
            )
            try:
                yield
            finally:
                await processor.close()
                logger.info("Processing services stopped.")

    app = FastAPI(
        title="PDF Batch Processor",
        description="Merge, split, compress, rotate, watermark, extract and OCR PDFs in batches",
        version="1.0.0",
        lifespan=lifespan,
    )

    # CORS – allow the web front-end
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # -----------------------------------------------------------------------
    # Routes
    # -----------------------------------------------------------------------
    app.include_router(process_router, prefix="/api", tags=["processing"])
    app.include_router(merge_router, prefix="/api", tags=["merge"])

    @app.get("/api/health")
    async def health():
        return {"status": "ok"}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=config.HOST, port=config.PORT)
