from uuid import uuid4

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from starlette.datastructures import Headers
from src.routers import (
    delivery_status,
    internal_observability,
    webhooks,
)


class EmptyPreflightCORSMiddleware(CORSMiddleware):
    """CORSMiddleware whose preflight answers carry no body, like the explicit OPTIONS routes."""

    def preflight_response(self, request_headers: Headers) -> Response:
        response = super().preflight_response(request_headers)
        headers = {
            key: value
            for key, value in response.headers.items()
            if key.lower() not in {"content-length", "content-type"}
        }
        return Response(status_code=response.status_code, headers=headers)


app = FastAPI(title="Interview Invite Delivery Status", version="0.1.0")

app.add_middleware(
    EmptyPreflightCORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def attach_request_id(request: Request, call_next):
    request_id = (
        request.headers.get("X-Request-ID")
        or request.headers.get("X-Correlation-ID")
        or str(uuid4())
    )
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response

app.include_router(webhooks.router)
app.include_router(delivery_status.router)
app.include_router(internal_observability.router)


@app.get("/")
async def root():
    return {"status": "ok", "service": "delivery-status"}


@app.get("/health")
async def health():
    return {"status": "healthy"}
