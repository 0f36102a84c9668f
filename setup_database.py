"""
Database Setup Script

Creates the message router tables in the database named by DATABASE_URL.
Run this script before running the main application for the first time.
"""

import asyncio
import os
import sys

from config import Settings, REQUIRED_VARS, OPTIONAL_VARS, missing_required_vars
from database import DatabaseManager

async def setup_database(settings: Settings) -> bool:
    """Create all tables"""
    print("Setting up database for the message router...")
    db = DatabaseManager(settings.database_url)

    try:
        await db.initialize(create_tables=True)
        print(f"Database setup completed successfully ({db.dialect_name})!")
        print("You can now run the main application.")
        return True
    except Exception as e:
        print(f"Database setup failed: {e}")
        print("\nTroubleshooting:")
        print("1. Make sure PostgreSQL is running")
        print("2. Check your DATABASE_URL in .env file")
        print("3. Ensure the database user has CREATE privileges")
        import traceback
        traceback.print_exc()
        return False
    finally:
        await db.close()

def check_environment() -> bool:
    """Check if environment variables are properly configured"""
    print("Checking environment configuration...")

    missing_required = missing_required_vars()
    if missing_required:
        print(f"Missing required environment variables: {', '.join(missing_required)}")
        print("Please add these to your .env file")
        return False

    print(f"All required environment variables are set ({', '.join(REQUIRED_VARS)})")

    for var in OPTIONAL_VARS:
        if not os.getenv(var):
            print(f"Optional variable {var} not set, using default")

    return True

async def main() -> int:
    """Main setup function"""
    print("=== Message Router - Database Setup ===")
    print()

    settings = Settings.from_env()
    if not check_environment():
        return 1

    print()

    return 0 if await setup_database(settings) else 1

if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
