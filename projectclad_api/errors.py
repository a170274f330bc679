from __future__ import annotations

from fastapi import HTTPException, status

from projectclad_api.config import settings


def error(status_code: int, code: str, message: str, details: dict | None = None) -> HTTPException:
    return HTTPException(
        status_code=status_code,
        detail={"error": {"code": code, "message": message, "details": details or {}}},
    )


def unauthorized() -> HTTPException:
    return error(
        status.HTTP_401_UNAUTHORIZED,
        "unauthorized",
        "Authentication required",
        {"login_url": settings.login_path},
    )


def forbidden(message: str = "You do not have permission for this action") -> HTTPException:
    return error(status.HTTP_403_FORBIDDEN, "forbidden", message)


def not_found(resource: str = "Resource") -> HTTPException:
    return error(status.HTTP_404_NOT_FOUND, "not_found", f"{resource} not found")


def bad_request(code: str, message: str, details: dict | None = None) -> HTTPException:
    return error(status.HTTP_400_BAD_REQUEST, code, message, details)


def validation_error(code: str, message: str, details: dict | None = None) -> HTTPException:
    return error(status.HTTP_422_UNPROCESSABLE_CONTENT, code, message, details)


def required(field: str, message: str) -> HTTPException:
    return validation_error(f"{field}_required", message, {"field": field})


def conflict(code: str, message: str, details: dict | None = None) -> HTTPException:
    return error(status.HTTP_409_CONFLICT, code, message, details)


def invalid_order() -> HTTPException:
    return bad_request("invalid_order", "Order list does not match the current collection")


def locked() -> HTTPException:
    return conflict("job_locked", "Order is locked")


def already_approved() -> HTTPException:
    return conflict("already_approved", "Approval request has already been approved")


def no_approvers() -> HTTPException:
    return validation_error("no_approvers", "Add project member to continue")


def not_configured(code: str, message: str) -> HTTPException:
    return error(status.HTTP_503_SERVICE_UNAVAILABLE, code, message)


def dependency_error(message: str) -> HTTPException:
    return error(status.HTTP_502_BAD_GATEWAY, "dependency_error", message)


def delivery_failed(message: str) -> HTTPException:
    return error(status.HTTP_502_BAD_GATEWAY, "notification_failed", message)
