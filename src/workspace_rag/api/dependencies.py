from fastapi import Request

from ..service import RagService


def get_service(request: Request) -> RagService:
    """Return the service instance owned by the running application."""
    return request.app.state.service
