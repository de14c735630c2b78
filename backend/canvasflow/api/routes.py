from fastapi import APIRouter
from .v1 import execution, history

api_router = APIRouter(prefix="/api", tags=["canvasflow"])

api_router.include_router(execution.router, prefix="/v1", tags=["execution"])
api_router.include_router(history.router, prefix="/v1", tags=["history"])

@api_router.get("/")
def read_root():
    return {"message": "canvasflow execution engine"}
