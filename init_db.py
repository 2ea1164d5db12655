#!/usr/bin/env python3
"""
Database initialization script for local SQLite runs of the scheduler.
PostgreSQL deployments use `alembic upgrade head` instead.
"""

import asyncio
import os
import sys
from pathlib import Path

import sqlalchemy as sa

# Add the project root to the path
sys.path.insert(0, str(Path(__file__).parent))


async def init_database(url: str) -> bool:
    """Create the appointments schema and check the connection"""
    from appointment_scheduler.db.base import init_db
    from appointment_scheduler.db.session import build_engine, build_sessionmaker

    print("🗄️  Initializing database...")

    if url.startswith("sqlite") and ":memory:" not in url:
        Path("data").mkdir(exist_ok=True)

    engine = build_engine(url)
    try:
        await init_db(engine)
        print("✅ Database tables created successfully!")

        async with build_sessionmaker(engine)() as session:
            result = await session.execute(sa.text("SELECT 1"))
            if result.scalar() == 1:
                print("✅ Database connection test passed!")
            else:
                print("❌ Database connection test failed!")
                return False
    except sa.exc.SQLAlchemyError as e:
        print(f"❌ Database initialization failed: {e}")
        return False
    finally:
        await engine.dispose()

    return True


if __name__ == "__main__":
    print("🚀 Appointment Scheduler Database Initialization")
    print("=" * 50)

    os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./data/scheduler.db")

    if asyncio.run(init_database(os.environ["DATABASE_URL"])):
        print("\n🎉 Database initialization complete!")
        print("\nNext steps:")
        print("1. Set SCHEDULER_API_KEY (and Google Calendar settings) in .env")
        print("2. Run: uvicorn appointment_scheduler.main:app --reload")
        print("3. Test: curl http://localhost:8000/healthz")
    else:
        print("\n❌ Database initialization failed!")
        sys.exit(1)
