"""Seed script for the car rental backend.

Creates baseline data for local testing:
- 1 admin, 1 owner, 2 customers and 1 driver account
- 2 pickup locations in Ho Chi Minh City
- 3 cars owned by the owner account
- 1 approved driver profile
- 2 promotions (a code and an auto-applied one)

Idempotent: rows are looked up by their natural key before creation.
Run with: python seed.py
"""

import asyncio
import sys
from datetime import timedelta
from decimal import Decimal

from app.config import settings

if settings.APP_ENV == "production":
    print("ERROR: Cannot seed production database.")
    sys.exit(1)

from sqlalchemy import select

from app.database import async_session
from app.models.car import Car
from app.models.driver_profile import DriverProfile
from app.models.enums import DiscountType, DriverStatus, PromotionStatus, UserRole
from app.models.location import Location
from app.models.promotion import Promotion
from app.models.user import User
from app.utils.dates import utcnow

SEED_USERS = [
    {"email": "admin@carrental.vn", "name": "Admin", "role": UserRole.ADMIN, "phone": "+84900000000"},
    {"email": "owner@carrental.vn", "name": "Nguyen Van An", "role": UserRole.OWNER, "phone": "+84900000001"},
    {"email": "customer1@carrental.vn", "name": "Tran Thi Binh", "role": UserRole.CUSTOMER, "phone": "+84900000002"},
    {"email": "customer2@carrental.vn", "name": "Le Van Cuong", "role": UserRole.CUSTOMER, "phone": "+84900000003"},
    {"email": "driver@carrental.vn", "name": "Pham Van Dung", "role": UserRole.DRIVER, "phone": "+84900000004"},
]

SEED_LOCATIONS = [
    {"name": "District 1 Office", "address": "12 Nguyen Hue, District 1, Ho Chi Minh City",
     "latitude": Decimal("10.7740"), "longitude": Decimal("106.7036")},
    {"name": "Tan Son Nhat Airport", "address": "Truong Son, Tan Binh, Ho Chi Minh City",
     "latitude": Decimal("10.8185"), "longitude": Decimal("106.6588")},
]

SEED_CARS = [
    {"license_plate": "51A-123.45", "name": "Toyota Vios 2022", "brand": "Toyota", "model": "Vios", "seats": 5,
     "hourly_rate": Decimal("100000"), "daily_rate": Decimal("800000"), "deposit_amount": Decimal("2000000"),
     "is_delivery_available": True, "delivery_fee_per_km": Decimal("10000"), "max_delivery_distance": Decimal("30")},
    {"license_plate": "51A-678.90", "name": "Mazda CX-5 2023", "brand": "Mazda", "model": "CX-5", "seats": 5,
     "hourly_rate": Decimal("150000"), "daily_rate": Decimal("1200000"), "deposit_amount": Decimal("5000000"),
     "is_delivery_available": False},
    {"license_plate": "51B-246.80", "name": "Ford Transit 16 seats", "brand": "Ford", "model": "Transit", "seats": 16,
     "hourly_rate": Decimal("250000"), "daily_rate": Decimal("2000000"), "deposit_amount": Decimal("5000000"),
     "is_delivery_available": True, "delivery_fee_per_km": Decimal("15000"), "max_delivery_distance": Decimal("50"),
     "overtime_fee_per_hour": Decimal("300000")},
]


def _seed_promotions() -> list[dict]:
    now = utcnow()
    return [
        {"code": "WELCOME10", "name": "Welcome 10%", "discount_type": DiscountType.PERCENTAGE,
         "discount_value": Decimal("10"), "max_discount": Decimal("100000"), "min_amount": Decimal("500000"),
         "max_uses": 1000, "max_uses_per_user": 1, "is_auto_apply": False, "priority": 0,
         "start_date": now - timedelta(days=1), "end_date": now + timedelta(days=90)},
        {"code": "WEEKEND50K", "name": "50.000 ₫ off every rental", "discount_type": DiscountType.FIXED_AMOUNT,
         "discount_value": Decimal("50000"), "max_discount": None, "min_amount": Decimal("300000"),
         "max_uses": None, "max_uses_per_user": 3, "is_auto_apply": True, "priority": 10,
         "start_date": now - timedelta(days=1), "end_date": now + timedelta(days=30)},
    ]


async def seed() -> None:
    async with async_session() as db:
        user_map: dict[str, User] = {}

        for user_data in SEED_USERS:
            result = await db.execute(select(User).where(User.email == user_data["email"]))
            existing = result.scalar_one_or_none()
            if existing:
                print(f"  [skip] User {user_data['email']} already exists")
                user_map[user_data["email"]] = existing
                continue
            user = User(**user_data)
            db.add(user)
            await db.flush()
            user_map[user_data["email"]] = user
            print(f"  [created] User {user_data['email']} ({user_data['role'].value})")

        location_ids: list[int] = []
        for location_data in SEED_LOCATIONS:
            result = await db.execute(select(Location).where(Location.name == location_data["name"]))
            location = result.scalar_one_or_none()
            if location is None:
                location = Location(**location_data)
                db.add(location)
                await db.flush()
                print(f"  [created] Location {location_data['name']}")
            location_ids.append(location.id)

        owner = user_map["owner@carrental.vn"]
        for car_data in SEED_CARS:
            result = await db.execute(select(Car).where(Car.license_plate == car_data["license_plate"]))
            if result.scalar_one_or_none():
                print(f"  [skip] Car {car_data['license_plate']} already exists")
                continue
            db.add(Car(owner_id=owner.id, location_id=location_ids[0], **car_data))
            print(f"  [created] Car {car_data['name']}")

        driver_user = user_map["driver@carrental.vn"]
        result = await db.execute(select(DriverProfile).where(DriverProfile.user_id == driver_user.id))
        if result.scalar_one_or_none() is None:
            db.add(
                DriverProfile(
                    user_id=driver_user.id,
                    owner_id=owner.id,
                    hourly_fee=Decimal("50000"),
                    daily_fee=Decimal("500000"),
                    status=DriverStatus.APPROVED,
                )
            )
            print("  [created] DriverProfile for driver@carrental.vn")

        for promotion_data in _seed_promotions():
            result = await db.execute(select(Promotion).where(Promotion.code == promotion_data["code"]))
            if result.scalar_one_or_none():
                print(f"  [skip] Promotion {promotion_data['code']} already exists")
                continue
            db.add(Promotion(status=PromotionStatus.ACTIVE, **promotion_data))
            print(f"  [created] Promotion {promotion_data['code']}")

        await db.commit()
        print("\nSeed completed successfully.")


if __name__ == "__main__":
    print("Seeding car rental database...")
    asyncio.run(seed())
