from __future__ import annotations

import asyncio
import logging

from stablepay.application.lifecycle import LifecycleEngine

log = logging.getLogger("payments.sweeper")


async def expiry_sweeper(engine: LifecycleEngine, interval: float = 30.0) -> None:
    """
    Фоновый воркер: раз в interval секунд переводит просроченные pending-запросы в expired,
    чтобы подписчики получили терминальный статус даже без обращений к запросу.
    """
    log.info("expiry_sweeper started, interval=%ss", interval)
    while True:
        try:
            await engine.sweep_expired()
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            log.warning("expiry_sweeper error: %s", exc)
        await asyncio.sleep(interval)
