from __future__ import annotations

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from quotagate.core.errors import StoreUnavailableError
from quotagate.persistence.db import store_errors


def test_store_errors_maps_transport_failures() -> None:
    with pytest.raises(StoreUnavailableError) as excinfo:
        with store_errors("load_usage"):
            raise OperationalError("SELECT 1", {}, Exception("connection refused"))
    assert "load_usage" in str(excinfo.value)


def test_store_errors_leaves_data_errors_alone() -> None:
    with pytest.raises(IntegrityError):
        with store_errors("load_usage"):
            raise IntegrityError("INSERT", {}, Exception("duplicate key"))
