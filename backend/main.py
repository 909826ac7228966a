import logging
import math
import os
import sys
from pathlib import Path
from typing import List, Optional

import psycopg2
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from jose import JWTError, jwt
from pydantic import BaseModel

_project_root = Path(__file__).resolve().parents[1]
if str(_project_root) not in sys.path:
    sys.path.append(str(_project_root))

from backend import app_context
from backend.app.entitlements import ReconciliationError, UnauthorizedError
from backend.app.entitlements.config import AuthConfig, load_auth_config
from backend.app.routes.entitlements import router as entitlements_router


load_dotenv()

logger = logging.getLogger("entitlements.app")


def _parse_connect_timeout(raw_value: str) -> int:
    try:
        timeout = float(raw_value)
    except ValueError as exc:
        raise ValueError("DB_CONNECT_TIMEOUT must be a number") from exc
    if timeout < 0:
        raise ValueError("DB_CONNECT_TIMEOUT must be non-negative")
    return int(math.ceil(timeout))


DB_CONFIG = dict(
    host=os.getenv("DB_HOST", "127.0.0.1"),
    port=int(os.getenv("DB_PORT", "5432")),
    dbname=os.getenv("DB_NAME", "fitconnect"),
    user=os.getenv("DB_USER", "fitconnect"),
    password=os.getenv("DB_PASSWORD", "fitconnect"),
    connect_timeout=_parse_connect_timeout(os.getenv("DB_CONNECT_TIMEOUT", "5")),
)


def _parse_origins(raw_value: str) -> List[str]:
    return [origin.strip() for origin in raw_value.split(",") if origin.strip()]


CORS_ALLOWED_ORIGINS = _parse_origins(os.getenv("CORS_ALLOWED_ORIGINS", "http://localhost:5173"))


class AuthenticatedUser(BaseModel):
    id: str
    email: Optional[str] = None
    role: Optional[str] = None


def get_conn():
    return psycopg2.connect(**DB_CONFIG)


_auth_config: Optional[AuthConfig] = None


def _get_auth_config() -> AuthConfig:
    global _auth_config
    if _auth_config is None:
        _auth_config = load_auth_config()
    return _auth_config


def resolve_user_from_bearer_token(token: str, *, config: Optional[AuthConfig] = None) -> Optional[AuthenticatedUser]:
    auth_config = config or _get_auth_config()
    try:
        payload = jwt.decode(
            token,
            auth_config.jwt_secret,
            algorithms=[auth_config.jwt_algorithm],
            audience=auth_config.jwt_audience,
        )
    except JWTError:
        return None

    subject = payload.get("sub")
    if not subject:
        return None
    return AuthenticatedUser(id=str(subject), email=payload.get("email"), role=payload.get("role"))


def get_current_user(authorization: Optional[str] = None) -> AuthenticatedUser:
    token = (authorization or "").replace("Bearer ", "", 1).strip()
    if not token:
        logger.info("No authorization token provided")
        raise UnauthorizedError()

    user = resolve_user_from_bearer_token(token)
    if user is None:
        logger.info("Rejected invalid access token")
        raise UnauthorizedError()
    return user


app_context.configure(get_conn=get_conn, get_current_user=get_current_user)

app = FastAPI(title="FitConnect Entitlements API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["authorization", "x-client-info", "apikey", "content-type"],
)

app.include_router(entitlements_router)


@app.exception_handler(ReconciliationError)
async def handle_reconciliation_error(request: Request, exc: ReconciliationError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(
            "Entitlement request failed",
            extra={"error_code": exc.code, "error": exc.message, "path": request.url.path},
        )
    return JSONResponse(status_code=exc.status_code, content=dict(exc.payload))


# run: uvicorn backend.main:app --host 127.0.0.1 --port 8000 --reload
