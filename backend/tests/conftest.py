import os
from collections.abc import AsyncGenerator
from datetime import timedelta
from decimal import Decimal

os.environ.setdefault("JWT_SECRET", "test-secret-for-unit-tests-minimum-32-chars")
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["STRIPE_SECRET_KEY"] = ""  # Force mock mode in tests
os.environ["STRIPE_WEBHOOK_SECRET"] = ""
os.environ["PAYPAL_CLIENT_ID"] = ""
os.environ["PAYPAL_CLIENT_SECRET"] = ""
os.environ["RESEND_API_KEY"] = ""
os.environ["REDIS_URL"] = ""
os.environ["USE_FIXED_EXCHANGE_RATE"] = "true"
os.environ["VND_TO_USD_RATE"] = "25000"
os.environ["GATEWAY_RETRY_BASE_DELAY"] = "0"

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.auth.service import create_access_token
from app.database import Base, get_db
from app.main import app
from app.models.booking import Booking
from app.models.car import Car
from app.models.driver_profile import DriverProfile
from app.models.enums import BookingStatus, DriverStatus, PaymentMethod, UserRole
from app.models.location import Location
from app.models.user import User
from app.services.currency import CurrencyService, RateCache, get_currency_service
from app.services.gateway import GatewayRegistry, get_gateway_registry
from app.services.paypal_service import PayPalGateway
from app.services.pricing import BookingDraft, RateCard, charge_from_breakdown, price_draft
from app.services.stripe_service import StripeGateway
from app.utils.dates import utcnow

# Use SQLite for tests (in-memory)
TEST_DB_URL = "sqlite+aiosqlite:///:memory:"

engine = create_async_engine(TEST_DB_URL, echo=False)
test_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db() -> AsyncGenerator[AsyncSession, None]:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with test_session() as session:
        yield session

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
def session_factory() -> async_sessionmaker:
    """Sessions on the test database, for code that opens its own (scheduled jobs)."""
    return test_session


@pytest.fixture
def currency() -> CurrencyService:
    return CurrencyService(RateCache(3600), fixed_rate=Decimal("25000"))


@pytest.fixture
def registry() -> GatewayRegistry:
    return GatewayRegistry(
        {
            PaymentMethod.PAYPAL: PayPalGateway(),
            PaymentMethod.CREDIT_CARD: StripeGateway(),
        }
    )


@pytest_asyncio.fixture
async def client(
    db: AsyncSession, currency: CurrencyService, registry: GatewayRegistry
) -> AsyncGenerator[AsyncClient, None]:
    async def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_currency_service] = lambda: currency
    app.dependency_overrides[get_gateway_registry] = lambda: registry

    # Reset rate limiter storage between tests to avoid 429 errors
    from app.utils.rate_limit import limiter
    if hasattr(limiter, "_limiter") and hasattr(limiter._limiter, "_storage"):
        limiter._limiter._storage.reset()
    elif hasattr(limiter, "reset"):
        limiter.reset()

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


async def _user(db: AsyncSession, email: str, name: str, role: UserRole) -> User:
    user = User(email=email, name=name, role=role, phone="+84900000000")
    db.add(user)
    await db.flush()
    return user


@pytest_asyncio.fixture
async def customer(db: AsyncSession) -> User:
    return await _user(db, "customer@test.vn", "Tran Thi Binh", UserRole.CUSTOMER)


@pytest_asyncio.fixture
async def other_customer(db: AsyncSession) -> User:
    return await _user(db, "other@test.vn", "Le Van Cuong", UserRole.CUSTOMER)


@pytest_asyncio.fixture
async def owner(db: AsyncSession) -> User:
    return await _user(db, "owner@test.vn", "Nguyen Van An", UserRole.OWNER)


@pytest_asyncio.fixture
async def admin(db: AsyncSession) -> User:
    return await _user(db, "admin@test.vn", "Admin", UserRole.ADMIN)


@pytest_asyncio.fixture
async def location(db: AsyncSession) -> Location:
    loc = Location(
        name="District 1 Office",
        address="12 Nguyen Hue, District 1",
        latitude=Decimal("10.7740000"),
        longitude=Decimal("106.7036000"),
    )
    db.add(loc)
    await db.flush()
    return loc


@pytest_asyncio.fixture
async def car(db: AsyncSession, owner: User, location: Location) -> Car:
    c = Car(
        owner_id=owner.id,
        location_id=location.id,
        name="Toyota Vios 2022",
        brand="Toyota",
        model="Vios",
        license_plate="51A-123.45",
        seats=5,
        hourly_rate=Decimal("50000"),
        daily_rate=Decimal("800000"),
        daily_hour_threshold=18,
        deposit_amount=Decimal("2000000"),
        min_rental_hours=4,
        overtime_fee_per_hour=Decimal("100000"),
        is_delivery_available=True,
        delivery_fee_per_km=Decimal("10000"),
        max_delivery_distance=Decimal("30"),
    )
    db.add(c)
    await db.flush()
    return c


@pytest_asyncio.fixture
async def driver(db: AsyncSession, owner: User) -> DriverProfile:
    user = await _user(db, "driver@test.vn", "Pham Van Dung", UserRole.DRIVER)
    profile = DriverProfile(
        user_id=user.id,
        owner_id=owner.id,
        hourly_fee=Decimal("30000"),
        daily_fee=Decimal("400000"),
        daily_hour_threshold=10,
        status=DriverStatus.APPROVED,
    )
    db.add(profile)
    await db.flush()
    return profile


@pytest.fixture
def auth_headers():
    def _headers(user: User) -> dict[str, str]:
        return {"Authorization": f"Bearer {create_access_token(user.id)}"}

    return _headers


_booking_seq = iter(range(1, 1_000_000))


@pytest.fixture
def make_booking(db: AsyncSession, car: Car, customer: User):
    """Insert a booking with its charge directly, bypassing checkout."""

    async def _make(
        pickup_in_hours: float = 48,
        duration_hours: int = 22,
        status: BookingStatus = BookingStatus.PENDING,
        booking_customer: User | None = None,
    ) -> Booking:
        pickup = utcnow().replace(microsecond=0) + timedelta(hours=pickup_in_hours)
        return_ = pickup + timedelta(hours=duration_hours)
        breakdown = price_draft(
            BookingDraft(
                pickup_datetime=pickup,
                return_datetime=return_,
                car_rates=RateCard(car.hourly_rate, car.daily_rate, car.daily_hour_threshold),
                car_deposit=car.deposit_amount,
            )
        )
        booking = Booking(
            booking_code=f"BK-TEST-{next(_booking_seq):06d}",
            customer_id=(booking_customer or customer).id,
            owner_id=car.owner_id,
            car_id=car.id,
            pickup_datetime=pickup,
            return_datetime=return_,
            hourly_rate=car.hourly_rate,
            daily_rate=car.daily_rate,
            daily_hour_threshold=car.daily_hour_threshold,
            deposit_amount=breakdown.deposit_amount,
            status=status,
            charge=charge_from_breakdown(breakdown),
            promotions=[],
            payments=[],
        )
        db.add(booking)
        await db.flush()
        return booking

    return _make
