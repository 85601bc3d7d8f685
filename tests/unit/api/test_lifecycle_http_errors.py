import pytest
from fastapi import HTTPException

from proposal_lifecycle.api.idempotency import IdempotencyConflictError
from proposal_lifecycle.api.routers.http_errors import (
    HTTP_422_UNPROCESSABLE,
    raise_lifecycle_http_exception,
)
from proposal_lifecycle.core.errors import (
    BusinessError,
    BusinessReason,
    LifecycleError,
    NotFoundError,
    StaleVersionError,
)


@pytest.mark.parametrize(
    ("exc", "expected_status", "expected_code"),
    [
        (NotFoundError("missing", code="PROPOSAL_NOT_FOUND"), 404, "PROPOSAL_NOT_FOUND"),
        (
            StaleVersionError(proposal_id="pp_1", expected_version=1, current_version=3),
            409,
            "STALE_VERSION",
        ),
        (BusinessError("TERMINAL_STATE", "done"), HTTP_422_UNPROCESSABLE, "TERMINAL_STATE"),
        (BusinessError("NOT_APPROVED", "draft"), HTTP_422_UNPROCESSABLE, "NOT_APPROVED"),
        (LifecycleError("generic"), 400, "LIFECYCLE_ERROR"),
        (IdempotencyConflictError(key="k1"), 409, "IDEMPOTENCY_KEY_CONFLICT"),
    ],
)
def test_raise_lifecycle_http_exception_maps_domain_errors(exc, expected_status, expected_code):
    with pytest.raises(HTTPException) as caught:
        raise_lifecycle_http_exception(exc)

    assert caught.value.status_code == expected_status
    assert caught.value.detail["code"] == expected_code
    assert caught.value.detail["message"] == exc.message
    assert caught.value.detail["context"] == exc.context


def test_stale_version_detail_carries_versions():
    exc = StaleVersionError(proposal_id="pp_1", expected_version=1, current_version=3)

    with pytest.raises(HTTPException) as caught:
        raise_lifecycle_http_exception(exc)

    assert caught.value.detail["context"] == {
        "proposal_id": "pp_1",
        "expected_version": 1,
        "current_version": 3,
    }


def test_raise_lifecycle_http_exception_reraises_unknown_error():
    with pytest.raises(RuntimeError, match="boom"):
        raise_lifecycle_http_exception(RuntimeError("boom"))


def test_business_error_reason_is_an_enum_member():
    exc = BusinessError("NOT_APPROVED", "draft")

    assert exc.reason is BusinessReason.NOT_APPROVED
    assert exc.code == "NOT_APPROVED"
    assert exc.to_dict()["code"] == "NOT_APPROVED"

    with pytest.raises(ValueError):
        BusinessError("NOT_A_REASON", "nope")
