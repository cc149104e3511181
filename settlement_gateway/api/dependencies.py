"""Dependency injection for FastAPI endpoints"""

from typing import Optional

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from settlement_gateway.infrastructure.cache import ResponseCache
from settlement_gateway.infrastructure.clients.terminals import RevenueSource
from settlement_gateway.infrastructure.credentials import CredentialStore
from settlement_gateway.infrastructure.database.session import get_db
from settlement_gateway.infrastructure.gateway import Gateway
from settlement_gateway.services.scheduler import PayoutScheduler, RunGuard


def get_request_id(request: Request) -> str:
    """Extract request ID from request state"""
    return getattr(request.state, "request_id", "unknown")


def get_user_id(request: Request) -> Optional[str]:
    """Operator identity forwarded by the console"""
    return request.headers.get("X-User-ID")


def get_credentials(request: Request) -> CredentialStore:
    return request.app.state.credentials


def get_cache(request: Request) -> ResponseCache:
    return request.app.state.cache


def get_gateway(request: Request) -> Gateway:
    return request.app.state.gateway


def get_revenue_source(request: Request) -> RevenueSource:
    return request.app.state.revenue_source


def get_run_guard(request: Request) -> RunGuard:
    return request.app.state.run_guard


def get_scheduler(
    db: Session = Depends(get_db),
    gateway: Gateway = Depends(get_gateway),
    revenue: RevenueSource = Depends(get_revenue_source),
    guard: RunGuard = Depends(get_run_guard),
) -> PayoutScheduler:
    return PayoutScheduler(db, gateway, revenue, guard)
