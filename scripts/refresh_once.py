# scripts/refresh_once.py
import asyncio
from marketplace_client.main import create_client

async def main():
    async with create_client(configure_logging=True) as client:
        refreshed = await client.refresh_access_token()
        print({"refreshed": refreshed})

if __name__ == "__main__":
    asyncio.run(main())
