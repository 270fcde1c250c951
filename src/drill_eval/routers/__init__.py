"""API routers."""

from drill_eval.routers.evaluate import router as evaluate_router

__all__ = ["evaluate_router"]
