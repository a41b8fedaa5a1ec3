from fastapi import Depends, FastAPI
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.responses import Response

from deptflow.api.auth import router as auth_router
from deptflow.api.departments import router as departments_router
from deptflow.api.deps import get_current_user
from deptflow.api.documents import router as documents_router
from deptflow.api.my_documents import router as my_documents_router
from deptflow.api.notifications import router as notifications_router
from deptflow.api.users import router as users_router
from deptflow.api.workflow import router as workflow_router
from deptflow.errors import register_error_handlers
from deptflow.logging import configure_logging

app = FastAPI(title="Deptflow Approval API")

configure_logging()
register_error_handlers(app)


def _include_api_router(router, dependencies=None):
    app.include_router(router, dependencies=dependencies)
    app.include_router(router, prefix="/api/v1", dependencies=dependencies)


_include_api_router(auth_router)
_include_api_router(departments_router, dependencies=[Depends(get_current_user)])
_include_api_router(users_router, dependencies=[Depends(get_current_user)])
_include_api_router(documents_router, dependencies=[Depends(get_current_user)])
_include_api_router(workflow_router, dependencies=[Depends(get_current_user)])
_include_api_router(my_documents_router, dependencies=[Depends(get_current_user)])
_include_api_router(notifications_router, dependencies=[Depends(get_current_user)])


@app.get("/health")
def health_check():
    return {"status": "ok"}


@app.get("/metrics")
def metrics():
    data = generate_latest()
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)
