from fastapi import APIRouter

from nearhelp.api.routes import presence
from nearhelp.modules.help_requests import routes as help_requests
from nearhelp.modules.messages import routes as messages
from nearhelp.modules.profiles import routes as profiles

api_router = APIRouter(prefix="/v1")

api_router.include_router(presence.router, prefix="/presence", tags=["presence"])
api_router.include_router(help_requests.router, prefix="/help-requests", tags=["help-requests"])
api_router.include_router(messages.router, prefix="/messages", tags=["messages"])
api_router.include_router(profiles.router, prefix="/profiles", tags=["profiles"])
