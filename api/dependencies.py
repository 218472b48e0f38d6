"""Request dependencies shared by the routers."""

from fastapi import Request

from vendor_bills.service import ReconciliationService


def get_service(request: Request) -> ReconciliationService:
    """The app's ReconciliationService, built from settings on first use."""
    service = request.app.state.service
    if service is None:
        service = ReconciliationService.from_settings(request.app.state.settings)
        request.app.state.service = service
    return service
