"""
FastAPI dependencies exposing the per-app service context
"""
from fastapi import Depends, Request

from app.core.config import Settings
from app.core.context import ServiceContext
from app.domain.services.delivery_queue import SqlDeliveryQueue


def get_context(request: Request) -> ServiceContext:
    return request.app.state.context


def get_settings(context: ServiceContext = Depends(get_context)) -> Settings:
    return context.settings


def get_delivery_queue(context: ServiceContext = Depends(get_context)) -> SqlDeliveryQueue:
    return SqlDeliveryQueue(context.session_factory, context.settings)
