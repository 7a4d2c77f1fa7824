import asyncio
import functools
import logging
import time
from typing import Optional
from fastapi import Depends, FastAPI, HTTPException, Query, Response
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv

from controller.orchestrator import AppNotFoundError, DeploymentOrchestrator
from controller.runtime import RuntimeUnavailableError
from controller.utils.models import DeployRequest, ScaleRequest
from controller.utils import lifecycle
from metrics.exporter import MetricsExporter
from state.db import DatabaseError

load_dotenv()

logger = logging.getLogger(__name__)

# FastAPI app
app = FastAPI(
    title="Slipway Controller API",
    description="Application sandbox, scaling and routing control plane",
    version="1.0.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.on_event("startup")
async def startup_event():
    """Initialize all components when the API starts."""
    await lifecycle.startup_event()

@app.on_event("shutdown")
async def shutdown_event():
    """Clean up resources when shutting down."""
    await lifecycle.shutdown_event()

def get_orchestrator() -> DeploymentOrchestrator:
    orchestrator = lifecycle.get_orchestrator()
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Controller is not ready")
    return orchestrator

def get_exporter() -> MetricsExporter:
    return lifecycle.get_exporter()

async def _run_blocking(func, *args, **kwargs):
    """Run a blocking workflow on the runtime pool, bounded by the request timeout."""
    loop = asyncio.get_running_loop()
    call = functools.partial(func, *args, **kwargs)
    return await asyncio.wait_for(
        loop.run_in_executor(lifecycle.get_executor(), call),
        timeout=lifecycle.get_request_timeout()
    )

def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, HTTPException):
        return e
    if isinstance(e, AppNotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, (RuntimeUnavailableError, DatabaseError)):
        return HTTPException(status_code=503, detail=str(e))
    if isinstance(e, asyncio.TimeoutError):
        # Side effects already started stay in place until the next deploy or stop
        return HTTPException(status_code=504, detail="Operation timed out")
    if isinstance(e, ValueError):
        return HTTPException(status_code=400, detail=str(e))
    return HTTPException(status_code=500, detail=str(e))

# API Endpoints

@app.post("/apps/{app_id}/deploy")
async def deploy_app(app_id: int, request: Optional[DeployRequest] = None,
                     orchestrator: DeploymentOrchestrator = Depends(get_orchestrator)):
    """Deploy (or redeploy) an application's instances."""
    request = request or DeployRequest()
    try:
        result = await _run_blocking(
            orchestrator.deploy, app_id,
            instances=request.instances, env_vars=request.env_vars, image=request.image
        )
        return result.to_dict()
    except Exception as e:
        logger.error(f"Failed to deploy app {app_id}: {e}")
        raise _http_error(e)

@app.post("/apps/{app_id}/stop")
async def stop_app(app_id: int, orchestrator: DeploymentOrchestrator = Depends(get_orchestrator)):
    """Stop an application."""
    try:
        result = await _run_blocking(orchestrator.stop, app_id)
        return result.to_dict()
    except Exception as e:
        logger.error(f"Failed to stop app {app_id}: {e}")
        raise _http_error(e)

@app.get("/apps/{app_id}/containers")
async def list_containers(app_id: int, orchestrator: DeploymentOrchestrator = Depends(get_orchestrator)):
    """List an application's containers as the runtime reports them."""
    try:
        return await _run_blocking(orchestrator.list_containers, app_id)
    except Exception as e:
        logger.error(f"Failed to list containers for app {app_id}: {e}")
        raise _http_error(e)

@app.post("/apps/{app_id}/scale")
async def scale_app(app_id: int, scale_request: ScaleRequest,
                    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator)):
    """Set an application's target instance count."""
    try:
        return await _run_blocking(orchestrator.scale, app_id, scale_request.instances)
    except Exception as e:
        logger.error(f"Failed to scale app {app_id}: {e}")
        raise _http_error(e)

@app.post("/apps/{app_id}/scale/up")
async def scale_up(app_id: int, increment: int = Query(1, ge=1),
                   orchestrator: DeploymentOrchestrator = Depends(get_orchestrator)):
    try:
        return await _run_blocking(orchestrator.scale_up, app_id, increment)
    except Exception as e:
        logger.error(f"Failed to scale up app {app_id}: {e}")
        raise _http_error(e)

@app.post("/apps/{app_id}/scale/down")
async def scale_down(app_id: int, decrement: int = Query(1, ge=1),
                     orchestrator: DeploymentOrchestrator = Depends(get_orchestrator)):
    try:
        return await _run_blocking(orchestrator.scale_down, app_id, decrement)
    except Exception as e:
        logger.error(f"Failed to scale down app {app_id}: {e}")
        raise _http_error(e)

@app.get("/apps/{app_id}/scale")
async def get_scaling_metrics(app_id: int, orchestrator: DeploymentOrchestrator = Depends(get_orchestrator)):
    """Get instance count, scaling policy and utilization for an application."""
    try:
        return await _run_blocking(orchestrator.metrics, app_id)
    except Exception as e:
        logger.error(f"Failed to get metrics for app {app_id}: {e}")
        raise _http_error(e)

@app.post("/apps/{app_id}/proxy")
async def regenerate_proxy(app_id: int, orchestrator: DeploymentOrchestrator = Depends(get_orchestrator)):
    """Rebuild an application's nginx route from its running instances."""
    try:
        return await _run_blocking(orchestrator.regenerate_proxy, app_id)
    except Exception as e:
        logger.error(f"Failed to regenerate proxy for app {app_id}: {e}")
        raise _http_error(e)

@app.get("/apps/{app_id}/proxy/status")
async def proxy_status(app_id: int, orchestrator: DeploymentOrchestrator = Depends(get_orchestrator)):
    try:
        return await _run_blocking(orchestrator.proxy_status, app_id)
    except Exception as e:
        logger.error(f"Failed to get proxy status for app {app_id}: {e}")
        raise _http_error(e)

@app.get("/metrics")
async def prometheus_metrics(exporter: MetricsExporter = Depends(get_exporter)):
    """Prometheus exposition of controller metrics."""
    return Response(content=exporter.get_prometheus_metrics(), media_type=exporter.content_type)

@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "timestamp": time.time(),
        "version": "1.0.0"
    }
