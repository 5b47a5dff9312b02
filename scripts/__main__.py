"""Allow `python -m scripts` to sync the permission catalog and seed the demo studio."""

import asyncio

from scripts.seed import _run_seed

asyncio.run(_run_seed())
