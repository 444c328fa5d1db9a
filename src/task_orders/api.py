"""
FastAPI Backend for Task Orders

Provides REST endpoints for assigning, completing, listing and deleting task
orders, plus the user rating and leaderboard. All endpoints delegate to an
OrderService held on ``app.state``; domain errors map to 404/409 and store
failures to 503.
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Depends, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from .config import Settings, load_settings
from .exceptions import InvalidStateTransition, NotFound, StoreUnavailable
from .models import (
    AssignOrderRequest,
    AssignOrderResponse,
    CompleteOrderRequest,
    DeleteOrderResponse,
    HealthResponse,
    LeaderboardResponse,
    OrderDTO,
    RatingEntry,
    TaskOrder,
)
from .service import OrderService

logger = logging.getLogger(__name__)

MAX_LEADERBOARD_LIMIT = 100


# Service dependency for FastAPI dependency injection
def get_service(request: Request) -> OrderService:
    """
    FastAPI dependency to provide the order service.

    Raises:
        HTTPException: 503 if the service is not available
    """
    service = getattr(request.app.state, "service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Database not available")
    return service


def _raise_for_store_error(action: str, e: Exception):
    """Translate unexpected errors into HTTP errors and log them."""
    if isinstance(e, StoreUnavailable):
        logger.error(f"Store unavailable while trying to {action}: {e}")
        raise HTTPException(status_code=503, detail="Storage temporarily unavailable")
    logger.error(f"Failed to {action}: {e}")
    raise HTTPException(status_code=500, detail=f"Failed to {action}")


def create_app(settings: Optional[Settings] = None, service: Optional[OrderService] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Used to open the database at startup when ``service`` is None
        service: Prebuilt service to serve; the caller keeps ownership of it

    Returns:
        Configured FastAPI app
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Open the database on startup and close it on shutdown if we own it."""
        owns_service = app.state.service is None
        if owns_service:
            try:
                app.state.service = OrderService.from_settings(settings or load_settings())
            except Exception as e:
                logger.error(f"Failed to initialize database: {e}")
                raise

        logger.info("Task Orders API starting up...")
        logger.info("Available endpoints:")
        logger.info("  GET /healthz - Health check")
        logger.info("  POST /api/orders - Assign a task or return the active order")
        logger.info("  POST /api/orders/{order_id}/complete - Complete an order")
        logger.info("  DELETE /api/orders/{order_id} - Delete an order")
        logger.info("  GET /api/users/{user_id}/orders - Order history")
        logger.info("  GET /api/rating/top - Leaderboard")

        yield

        if owns_service and app.state.service is not None:
            app.state.service.close()
            app.state.service = None
            logger.info("Database connection closed")

    app = FastAPI(
        title="Task Orders API",
        description="Task assignment, solve tracking and user rating",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/healthz", response_model=HealthResponse)
    async def health_check(service: OrderService = Depends(get_service)):
        """Health check endpoint reporting database connectivity."""
        database_connected = service.is_healthy()
        return HealthResponse(
            status="healthy" if database_connected else "degraded",
            database_connected=database_connected,
            timestamp=datetime.now(timezone.utc).isoformat(),
        )

    @app.post("/api/orders", response_model=AssignOrderResponse)
    def assign_order(
        request: AssignOrderRequest,
        response: Response,
        service: OrderService = Depends(get_service),
    ):
        """
        Assign a task to a user, or return the user's unsolved order.

        Returns 201 when a new order was created and 200 when the existing
        active order is returned.
        """
        try:
            order, created = service.assign_or_get_active(request.user_id, request.task_id)
            response.status_code = 201 if created else 200
            return AssignOrderResponse(created=created, order=order)
        except NotFound as e:
            raise HTTPException(status_code=404, detail=str(e))
        except Exception as e:
            _raise_for_store_error("assign order", e)

    @app.get("/api/orders/{order_id}", response_model=TaskOrder)
    def get_order(order_id: int, service: OrderService = Depends(get_service)):
        """Get a single order."""
        try:
            return service.get_order(order_id)
        except NotFound as e:
            raise HTTPException(status_code=404, detail=str(e))
        except Exception as e:
            _raise_for_store_error("retrieve order", e)

    @app.post("/api/orders/{order_id}/complete", response_model=TaskOrder)
    def complete_order(
        order_id: int,
        request: Optional[CompleteOrderRequest] = None,
        service: OrderService = Depends(get_service),
    ):
        """
        Mark an order solved.

        Raises:
            HTTPException: 404 if the order does not exist, 409 if it is already solved
        """
        completed_at = request.completed_at if request else None
        try:
            return service.complete_order(order_id, completed_at)
        except InvalidStateTransition as e:
            status_code = 404 if e.reason == InvalidStateTransition.NOT_FOUND else 409
            raise HTTPException(status_code=status_code, detail=str(e))
        except Exception as e:
            _raise_for_store_error("complete order", e)

    @app.delete("/api/orders/{order_id}", response_model=DeleteOrderResponse)
    def delete_order(order_id: int, service: OrderService = Depends(get_service)):
        """Delete an order. Deleting a missing order succeeds with deleted=false."""
        try:
            deleted = service.delete_order(order_id)
            return DeleteOrderResponse(order_id=order_id, deleted=deleted)
        except Exception as e:
            _raise_for_store_error("delete order", e)

    @app.get("/api/users/{user_id}/orders", response_model=List[OrderDTO])
    def list_user_orders(user_id: int, service: OrderService = Depends(get_service)):
        """Get a user's full order history; 404 for unknown users."""
        try:
            return service.list_user_orders(user_id)
        except NotFound as e:
            raise HTTPException(status_code=404, detail=str(e))
        except Exception as e:
            _raise_for_store_error("retrieve orders", e)

    @app.get("/api/users/{user_id}/orders/active", response_model=Optional[TaskOrder])
    def get_active_order(user_id: int, service: OrderService = Depends(get_service)):
        """Get the user's unsolved order, or null; 404 for unknown users."""
        try:
            return service.get_active_unsolved(user_id)
        except NotFound as e:
            raise HTTPException(status_code=404, detail=str(e))
        except Exception as e:
            _raise_for_store_error("retrieve active order", e)

    @app.get("/api/users/{user_id}/rating", response_model=RatingEntry)
    def get_user_rating(user_id: int, service: OrderService = Depends(get_service)):
        """Get a single user's rating."""
        try:
            return service.user_rating(user_id)
        except NotFound as e:
            raise HTTPException(status_code=404, detail=str(e))
        except Exception as e:
            _raise_for_store_error("retrieve rating", e)

    @app.get("/api/rating/top", response_model=LeaderboardResponse)
    def get_top_users(
        limit: Optional[int] = Query(None, ge=1, le=MAX_LEADERBOARD_LIMIT),
        service: OrderService = Depends(get_service),
    ):
        """Get the leaderboard. An empty list means nobody has solved a task yet."""
        if limit is None:
            limit = service.leaderboard_size
        try:
            entries = service.top_users(limit)
            return LeaderboardResponse(entries=entries, total_count=len(entries), limit=limit)
        except Exception as e:
            _raise_for_store_error("retrieve leaderboard", e)

    return app
