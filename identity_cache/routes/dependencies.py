from fastapi import HTTPException, Request, status

from identity_cache.services.engine import IdentityCacheEngine


def get_engine(request: Request) -> IdentityCacheEngine:
    """Engine built by the application lifespan."""
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Directory engine not ready"
        )
    return engine
