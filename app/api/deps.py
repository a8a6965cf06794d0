from uuid import UUID

from fastapi import Header, Request

from app.core.exceptions import ValidationError
from app.services.container import PipelineServices, build_default_services


def get_services(request: Request) -> PipelineServices:
    services = getattr(request.app.state, "services", None)
    if services is None:
        services = build_default_services()
        request.app.state.services = services
    return services


async def get_actor_id(x_actor_id: str | None = Header(default=None, alias="X-Actor-Id")) -> UUID | None:
    """Staff identity forwarded by the gateway that authenticated the request."""
    if not x_actor_id:
        return None
    try:
        return UUID(x_actor_id)
    except ValueError as exc:
        raise ValidationError("X-Actor-Id must be a UUID") from exc
