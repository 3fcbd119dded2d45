"""Shared fixtures: in-memory store and fakes for every collaborator."""

from datetime import datetime, timezone
from io import BytesIO

import pytest
from PIL import Image

from travory.audit import AuditLogger
from travory.config import ImageSettings
from travory.models.records import Coordinate, Plan, PlanType, TravelPlan, VisitedPlace
from travory.services.auth import StaticAuthProvider
from travory.services.image import DocumentImageStore, ImageService
from travory.services.notifications import InMemoryNotificationService
from travory.services.storage import InMemoryRemoteStore, LocalEntityStore


FIXED_NOW = datetime(2024, 7, 1, 12, 0, tzinfo=timezone.utc)


def png_bytes(color=(200, 30, 30, 255), size=(32, 24)) -> bytes:
    """A small RGBA PNG, which the image service must turn into JPEG."""
    output = BytesIO()
    Image.new("RGBA", size, color).save(output, format="PNG")
    return output.getvalue()


def make_trip(**overrides) -> TravelPlan:
    fields = dict(
        title="Kyoto",
        destination="Kyoto, Japan",
        start_date=datetime(2024, 7, 10),
        end_date=datetime(2024, 7, 12),
    )
    fields.update(overrides)
    return TravelPlan(**fields)


def make_plan(**overrides) -> Plan:
    fields = dict(
        title="Dentist",
        start_date=datetime(2024, 7, 10),
        end_date=datetime(2024, 7, 10),
        plan_type=PlanType.DAILY,
    )
    fields.update(overrides)
    return Plan(**fields)


def make_place(**overrides) -> VisitedPlace:
    fields = dict(
        title="Fushimi Inari",
        coordinate=Coordinate(latitude=34.9671, longitude=135.7727),
    )
    fields.update(overrides)
    return VisitedPlace(**fields)


@pytest.fixture
def store():
    store = LocalEntityStore(":memory:")
    yield store
    store.close()


@pytest.fixture
def auth():
    return StaticAuthProvider("alice")


@pytest.fixture
def audit_logger():
    return AuditLogger()


@pytest.fixture
def image_service(tmp_path):
    return ImageService(
        DocumentImageStore(str(tmp_path / "documents")),
        ImageSettings(directory=str(tmp_path / "documents")),
    )


@pytest.fixture
def notifications():
    return InMemoryNotificationService(clock=lambda: FIXED_NOW)


@pytest.fixture
def remote():
    return InMemoryRemoteStore()

