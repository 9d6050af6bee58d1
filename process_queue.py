#!/usr/bin/env python3
"""
Reenvio da fila de contingencia da NF-e

Uso:
    python process_queue.py              # processa as entradas vencidas uma vez
    python process_queue.py --limit 50
    python process_queue.py --loop       # roda continuamente (intervalo do .env)
"""
import argparse
import asyncio
import logging

from nfe_server.core import settings
from nfe_server.database import init_db
from nfe_server.repositories import SqlStores
from nfe_server.services.factory import NFeServices
from nfe_server.services.worker import run_worker_loop

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("process_queue")


async def main(loop: bool, limit: int, interval: int):
    await init_db()
    services = NFeServices(SqlStores())

    if loop:
        await run_worker_loop(services.worker, interval=interval)
        return

    report = await services.worker.process_due(limit)
    print(f"Processadas: {report.processed}")
    print(f"  Enviadas:    {report.sent}")
    print(f"  Reagendadas: {report.rescheduled}")
    print(f"  Falharam:    {report.failed}")
    print(f"  Ignoradas:   {report.skipped}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Processa a fila de contingencia da NF-e")
    parser.add_argument("--loop", action="store_true", help="Executa continuamente")
    parser.add_argument("--limit", type=int, default=settings.NFE_QUEUE_BATCH_SIZE,
                        help="Maximo de entradas por execucao")
    parser.add_argument("--interval", type=int, default=settings.NFE_WORKER_INTERVAL_SECONDS,
                        help="Intervalo em segundos no modo --loop")
    args = parser.parse_args()

    try:
        asyncio.run(main(args.loop, args.limit, args.interval))
    except KeyboardInterrupt:
        logger.info("Interrompido pelo operador")
