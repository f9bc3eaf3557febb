"""Translate collaborator HTTP responses into the checkout error taxonomy."""

import httpx

from cartpay.common.errors import ServiceError, TerminalServiceError, TransientServiceError


def _error_body(resp: httpx.Response) -> tuple[str | None, str]:
    try:
        body = resp.json()
    except ValueError:
        return None, resp.text or resp.reason_phrase
    if not isinstance(body, dict):
        return None, str(body)
    detail = body.get("detail", body)
    if isinstance(detail, dict):
        return detail.get("code"), detail.get("message") or detail.get("error") or str(detail)
    return body.get("code"), str(body.get("error") or detail)


def raise_for_service_status(
    resp: httpx.Response,
    dependency: str,
    terminal_error: type[ServiceError] = TerminalServiceError,
) -> None:
    """Raise the matching `ServiceError` for a non-2xx response."""

    if resp.status_code < 400:
        return
    code, message = _error_body(resp)
    if resp.status_code >= 500 or resp.status_code == 429:
        raise TransientServiceError(
            f"{dependency} unavailable ({resp.status_code}): {message}",
            dependency=dependency,
            status_code=resp.status_code,
            code=code,
        )
    raise terminal_error(
        message,
        dependency=dependency,
        status_code=resp.status_code,
        code=code,
    )
