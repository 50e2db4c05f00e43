"""
Run the indexer configured by the environment until interrupted.
"""

import asyncio

from poolindexer.core.indexer import Indexer


async def main():
    indexer = Indexer.create_instance_from_env()
    try:
        await indexer.run()
    finally:
        await indexer.stop()


if __name__ == "__main__":
    asyncio.run(main())
