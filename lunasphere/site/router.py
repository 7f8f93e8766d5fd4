"""
Site router.

This module provides the FastAPI router for the public site features:
- Analytics counters and the recent visitors list
- Contact form submissions and statistics
- Services catalog
"""
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, File, Form, Request, UploadFile, status

from lunasphere.auth.middleware import require_admin
from lunasphere.base_service import BaseService
from lunasphere.dependencies import AppServices, get_services
from lunasphere.site.catalog import entry_out
from lunasphere.site.contact import ContactRequest
from lunasphere.storage.models import UserRecord

router = APIRouter(tags=["site"])

base_service = BaseService("site")


def client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


# --- Analytics ---

@router.get("/analytics")
async def get_analytics(services: AppServices = Depends(get_services)) -> Dict[str, Any]:
    """Counters: totalVisitors, pageViews, registeredUsers, onlineNow."""
    return base_service.success_response(**await services.analytics.get_analytics())


@router.put("/analytics")
async def update_analytics(
    updates: Dict[str, Any] = Body(...),
    admin: UserRecord = Depends(require_admin),
    services: AppServices = Depends(get_services),
) -> Dict[str, Any]:
    """Overwrite counters (admin only). Unknown keys are ignored."""
    analytics = await services.analytics.update_counters(updates, admin.username)
    return base_service.success_response(analytics=analytics)


@router.get("/visitors")
async def list_visitors(services: AppServices = Depends(get_services)) -> Dict[str, Any]:
    """Up to 50 anonymised recent visitors."""
    return base_service.success_response(visitors=await services.analytics.list_visitors())


# --- Contact ---

@router.post("/contact")
async def submit_contact(
    body: ContactRequest,
    request: Request,
    services: AppServices = Depends(get_services),
) -> Dict[str, Any]:
    """
    Submit the contact form.

    Args:
        body: name, email, optional phone, service and message

    Returns:
        Dict with the submission id and timestamp
    """
    submission = await services.contact.submit(body, client_ip(request))
    return base_service.success_response(
        "Thank you for your message! We will get back to you soon.",
        data={
            "submissionId": submission.submission_id,
            "timestamp": submission.submitted_at.isoformat(),
        },
    )


@router.get("/contact")
async def contact_stats(
    admin: UserRecord = Depends(require_admin),
    services: AppServices = Depends(get_services),
) -> Dict[str, Any]:
    """Submission statistics (admin only)."""
    return base_service.success_response(data=await services.contact.stats())


# --- Services catalog ---

@router.get("/services")
async def list_catalog(services: AppServices = Depends(get_services)) -> Dict[str, Any]:
    entries = await services.catalog.list()
    return base_service.success_response(services=[entry_out(e) for e in entries])


@router.post("/services", status_code=status.HTTP_201_CREATED)
async def add_catalog_entry(
    title: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    category: Optional[str] = Form(None),
    price: Optional[str] = Form(None),
    image: Optional[UploadFile] = File(None),
    admin: UserRecord = Depends(require_admin),
    services: AppServices = Depends(get_services),
) -> Dict[str, Any]:
    """
    Add a service to the catalog (admin only).

    Multipart form; the image must be JPEG, PNG, GIF or WebP.
    """
    entry = await services.catalog.add(
        title, description, admin.username, category=category, price=price, image=image,
    )
    return base_service.success_response("Service added", service=entry_out(entry))


@router.delete("/services/{entry_id}")
async def remove_catalog_entry(
    entry_id: str,
    admin: UserRecord = Depends(require_admin),
    services: AppServices = Depends(get_services),
) -> Dict[str, Any]:
    await services.catalog.remove(entry_id, admin.username)
    return base_service.success_response("Service removed")
