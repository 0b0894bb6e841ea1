import asyncio
import inspect
import logging

logger = logging.getLogger(__name__)

_order_hooks = []
_pending_tasks = set()


def register_order_hook(callback) -> None:
    """
    Register a callback fired with the order id when an order reaches a
    status that ends live tracking. Sync and async callables are accepted.
    """
    if callback not in _order_hooks:
        _order_hooks.append(callback)


def unregister_order_hook(callback) -> None:
    if callback in _order_hooks:
        _order_hooks.remove(callback)


def _log_task_failure(task: asyncio.Task) -> None:
    _pending_tasks.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("ORDER_HOOK_ERROR", exc_info=exc)


def notify_order_invalidated(order_id) -> None:
    """Fire-and-forget. Hook failures are logged, never raised."""
    order_id = str(order_id)
    for hook in list(_order_hooks):
        try:
            result = hook(order_id)
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                _pending_tasks.add(task)
                task.add_done_callback(_log_task_failure)
        except Exception:
            logger.exception("ORDER_HOOK_ERROR order=%s", order_id)


async def drain_order_hooks() -> None:
    """Wait for in-flight async hooks (shutdown and tests)."""
    if _pending_tasks:
        await asyncio.gather(*list(_pending_tasks), return_exceptions=True)
