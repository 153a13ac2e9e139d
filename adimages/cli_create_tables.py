"""CLI script to create database tables."""
import asyncio

from adimages.db import create_tables


if __name__ == "__main__":
    asyncio.run(create_tables())
    print("Tables created successfully!")
