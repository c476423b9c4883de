"""Blob proxy routers."""

from signsuite.api.routers.blobs import router as blobs_router

__all__ = ["blobs_router"]
