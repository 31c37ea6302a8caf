"""
API сервер для Robokassa ResultURL.

Endpoint: POST /webhook/robokassa
Fields (query string, urlencoded form or JSON): OutSum, InvId, SignatureValue

Response: text/plain "OK<InvId>" (200), 400 / 404 / 500 otherwise.
"""

import asyncio
import logging
from datetime import datetime

from aiohttp import web

from billing import BillingService, CallbackStatus, SubscriberId
from billing.payments import merge_callback_params, success_response_text

logger = logging.getLogger(__name__)

BILLING_SERVICE_KEY = web.AppKey("billing_service", BillingService)
BACKGROUND_TASKS_KEY = web.AppKey("background_tasks", set)

REJECTION_RESPONSES = {
    CallbackStatus.MALFORMED: (400, "Bad request"),
    CallbackStatus.INVALID_INVOICE: (400, "Bad request"),
    CallbackStatus.BAD_SIGNATURE: (400, "Bad signature"),
    CallbackStatus.AMOUNT_MISMATCH: (400, "Bad amount"),
    CallbackStatus.UNKNOWN_INVOICE: (404, "Not found"),
}


async def _read_body(request: web.Request) -> dict:
    """Тіло запиту як dict: JSON або urlencoded/multipart форма."""
    if not request.body_exists:
        return {}
    if request.content_type == "application/json":
        data = await request.json()
        return data if isinstance(data, dict) else {}
    form = await request.post()
    return dict(form)


async def _notify_activation(service: BillingService, subscriber_id: SubscriberId) -> None:
    try:
        await service.notify_activation(subscriber_id)
    except Exception:
        logger.exception("Activation notice for %s failed", subscriber_id)


def _schedule_notification(app: web.Application, service: BillingService, subscriber_id: SubscriberId) -> None:
    tasks = app[BACKGROUND_TASKS_KEY]
    task = asyncio.create_task(_notify_activation(service, subscriber_id))
    tasks.add(task)
    task.add_done_callback(tasks.discard)


async def robokassa_webhook_handler(request: web.Request) -> web.Response:
    """
    Обробник ResultURL від Robokassa.

    Поля з тіла запиту мають пріоритет над query string.
    Будь-яка відповідь крім "OK<InvId>" змушує Robokassa повторити доставку.
    """
    try:
        body = await _read_body(request)
    except ValueError:
        logger.warning("Robokassa callback with unreadable body (content-type=%s)", request.content_type)
        return web.Response(text="Bad request", status=400)

    params = merge_callback_params(request.query, body)
    service = request.app[BILLING_SERVICE_KEY]

    try:
        outcome = await service.apply_callback(params)
    except Exception:
        logger.exception("Robokassa callback failed: InvId=%s", params.get("InvId"))
        return web.Response(text="Internal error", status=500)

    if not outcome.acknowledged:
        status, text = REJECTION_RESPONSES[outcome.status]
        return web.Response(text=text, status=status)

    response = web.Response(text=success_response_text(outcome.invoice_id), content_type="text/plain")
    if outcome.status is CallbackStatus.ACCEPTED and outcome.subscriber_id is not None:
        _schedule_notification(request.app, service, outcome.subscriber_id)
    return response


async def health_handler(request: web.Request) -> web.Response:
    """Health check endpoint."""
    return web.json_response({
        "status": "ok",
        "timestamp": datetime.now().isoformat(),
        "service": "astroguide-api",
    })


async def _drain_background_tasks(app: web.Application) -> None:
    tasks = list(app[BACKGROUND_TASKS_KEY])
    if tasks:
        await asyncio.gather(*tasks, return_exceptions=True)


def create_api_app(service: BillingService) -> web.Application:
    """Створити aiohttp додаток для API сервера."""
    app = web.Application()
    app[BILLING_SERVICE_KEY] = service
    app[BACKGROUND_TASKS_KEY] = set()
    app.on_cleanup.append(_drain_background_tasks)

    app.router.add_post("/webhook/robokassa", robokassa_webhook_handler)
    app.router.add_get("/health", health_handler)

    # Простий health check на корені
    app.router.add_get("/", health_handler)

    return app


async def start_api_server(app: web.Application, port: int) -> web.AppRunner:
    """Запустити API сервер."""
    runner = web.AppRunner(app)
    await runner.setup()

    site = web.TCPSite(runner, "0.0.0.0", port)
    await site.start()

    logger.info("API server started on port %s", port)

    return runner


async def stop_api_server(runner: web.AppRunner):
    """Зупинити API сервер."""
    await runner.cleanup()
    logger.info("API server stopped")
