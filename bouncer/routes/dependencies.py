from fastapi import HTTPException, Request, status

from bouncer.queues.orchestrator import QueueOrchestrator


def get_orchestrator(request: Request) -> QueueOrchestrator:
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Pipeline not initialized"
        )
    return pipeline.orchestrator
