"""Seed demo users scattered around a centre point.

Idempotent: users are keyed by username (``demo_<n>``), existing rows are
left alone.  Coordinates are stored on the row only; the running service
picks them up when it next rebuilds its spatial index at startup.

Usage: python -m scripts.seed_users [--count 50] [--lat 37.5665] [--lon 126.9780] [--spread-m 3000]
"""
import argparse
import asyncio
import math
import random
from datetime import date

from sqlalchemy import select

from app.config import get_settings
from app.database import Database
from app.models import User

GENDERS = ["female", "male"]
REGIONS = ["Jung-gu", "Jongno-gu", "Mapo-gu", "Yongsan-gu", "Seongdong-gu"]


def random_point(lat: float, lon: float, spread_m: float) -> tuple[float, float]:
    """Uniform point in a disc of radius ``spread_m`` (small-distance approximation)."""
    r = spread_m * math.sqrt(random.random())
    theta = random.uniform(0, 2 * math.pi)
    dlat = (r * math.cos(theta)) / 111_195.0
    dlon = (r * math.sin(theta)) / (111_195.0 * math.cos(math.radians(lat)))
    return round(lat + dlat, 6), round(lon + dlon, 6)


async def seed(count: int, lat: float, lon: float, spread_m: float) -> None:
    settings = get_settings()
    database = Database.from_settings(settings)
    if settings.DB_CREATE_ALL:
        await database.create_all()

    created = 0
    try:
        async with database.session() as session:
            for n in range(count):
                username = f"demo_{n}"
                existing = await session.execute(select(User.id).where(User.username == username))
                if existing.scalar_one_or_none() is not None:
                    continue
                latitude, longitude = random_point(lat, lon, spread_m)
                session.add(User(
                    username=username,
                    email=f"{username}@example.com",
                    password_hash="!",  # demo accounts cannot log in
                    nickname=f"Demo {n}",
                    gender=random.choice(GENDERS),
                    date_of_birth=date(date.today().year - random.randint(20, 45), random.randint(1, 12), 1),
                    region=random.choice(REGIONS),
                    latitude=latitude,
                    longitude=longitude,
                ))
                created += 1
    finally:
        await database.dispose()

    print(f"Seeded {created} users ({count - created} already present).")


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed demo users around a point")
    parser.add_argument("--count", type=int, default=50)
    parser.add_argument("--lat", type=float, default=37.5665)
    parser.add_argument("--lon", type=float, default=126.9780)
    parser.add_argument("--spread-m", type=float, default=3_000.0)
    args = parser.parse_args()
    asyncio.run(seed(args.count, args.lat, args.lon, args.spread_m))


if __name__ == "__main__":
    main()
