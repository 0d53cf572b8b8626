import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from starlette.middleware.base import BaseHTTPMiddleware
from circulation.config import settings
from circulation.database import init_db
from circulation.routes import loan, member, policy, jobs
from circulation.services.errors import LoanEngineError
from circulation.services.events import event_publisher

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


class LoggingMiddleware(BaseHTTPMiddleware):
    """Middleware to log incoming requests."""
    async def dispatch(self, request: Request, call_next):
        client_ip = request.client.host if request.client else "unknown"
        response = await call_next(request)
        logger.info(f"{request.method} {request.url.path} - IP: {client_ip} - {response.status_code}")
        return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables and start/stop the loan event publisher with FastAPI."""
    init_db()
    logger.info("Starting loan event publisher...")
    event_publisher.connect()

    yield

    logger.info("Stopping loan event publisher...")
    event_publisher.disconnect()


app = FastAPI(
    title="Library Circulation API",
    description="Loan lifecycle and copy allocation engine",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(LoggingMiddleware)


@app.exception_handler(LoanEngineError)
async def loan_engine_error_handler(request: Request, exc: LoanEngineError):
    """Surface engine failures verbatim with their typed code."""
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Include routers
app.include_router(loan.router)
app.include_router(member.router)
app.include_router(policy.router)
app.include_router(jobs.router)

@app.get("/")
async def root():
    return {"message": "Library Circulation API", "version": "1.0.0"}

@app.get("/api/health")
async def health_check():
    return {"status": "healthy"}

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "circulation.main:app",
        host=settings.host,
        port=settings.port,
        reload=True
    )
