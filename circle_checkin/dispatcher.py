"""Send one notification to many endpoints across the web-push and native-push channels."""
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as CallTimeout
from typing import Iterable, List

from .models import Channel, DeviceEndpoint, DispatchResult, Notification

logger = logging.getLogger(__name__)


class MulticastDispatcher:
    """
    Partitions endpoints by channel and sends through the matching transport.

    Each channel has its own worker pool, so a hanging transport can only tie
    up its own channel. A call gets `timeout` seconds to start and then
    `timeout` seconds to run once started; either way it is counted as a
    failure and cancelled. A cancelled call that has not started never runs.
    """

    def __init__(self, web_push=None, native_push=None, timeout: float = 10.0, max_workers: int = 8):
        self.web_push = web_push
        self.native_push = native_push
        self.timeout = timeout
        self._pools = {
            Channel.WEB_PUSH: ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="dispatch-web"),
            Channel.NATIVE_PUSH: ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="dispatch-native"),
        }

    def _call(self, channel: Channel, fn, *args):
        started = threading.Event()

        def run():
            started.set()
            return fn(*args)

        future = self._pools[channel].submit(run)
        # still queued behind busy workers: drop it rather than run it late
        if not started.wait(self.timeout) and future.cancel():
            raise CallTimeout()
        try:
            return future.result(timeout=self.timeout)
        except CallTimeout:
            future.cancel()
            raise

    def send(self, endpoints: Iterable[DeviceEndpoint], notification: Notification, link: str = "/",
             high_priority: bool = False) -> DispatchResult:
        web_tokens: List[str] = []
        native_tokens: List[str] = []
        for endpoint in endpoints:
            if endpoint.channel is Channel.NATIVE_PUSH:
                native_tokens.append(endpoint.token)
            else:
                web_tokens.append(endpoint.token)

        result = DispatchResult()
        if web_tokens:
            result.absorb(self._send_web(web_tokens, notification, link, high_priority))
        if native_tokens:
            result.absorb(self._send_native(native_tokens, notification))

        logger.info(
            f"Dispatched '{notification.title}' to {len(web_tokens)} web / {len(native_tokens)} native "
            f"endpoint(s): success={result.success_count} failure={result.failure_count}"
        )
        return result

    def _send_web(self, tokens: List[str], notification: Notification, link: str,
                  high_priority: bool) -> DispatchResult:
        result = DispatchResult()
        if self.web_push is None:
            logger.warning(f"Web push transport not configured: {len(tokens)} endpoint(s) unreachable")
            result.failure_count = len(tokens)
            return result

        batch_size = getattr(self.web_push, "max_batch_size", 500)
        for start in range(0, len(tokens), batch_size):
            chunk = tokens[start:start + batch_size]
            try:
                result.absorb(self._call(Channel.WEB_PUSH, self.web_push.send_multicast,
                                         chunk, notification, link, high_priority))
            except CallTimeout:
                logger.warning(f"Web push multicast timed out after {self.timeout}s ({len(chunk)} token(s))")
                result.failure_count += len(chunk)
            except Exception as e:
                logger.exception(f"Web push multicast failed ({len(chunk)} token(s)): {e}")
                result.failure_count += len(chunk)
        return result

    def _send_native(self, tokens: List[str], notification: Notification) -> DispatchResult:
        result = DispatchResult()
        if self.native_push is None or not self.native_push.is_configured():
            logger.warning(f"Native push transport not configured: {len(tokens)} endpoint(s) unreachable")
            result.failure_count = len(tokens)
            return result

        # the native protocol has no batch call
        for token in tokens:
            try:
                delivered = self._call(Channel.NATIVE_PUSH, self.native_push.send,
                                       token, notification.title, notification.body)
            except CallTimeout:
                logger.warning(f"Native push to ...{token[-20:]} timed out after {self.timeout}s")
                delivered = False
            except Exception as e:
                logger.exception(f"Native push to ...{token[-20:]} failed: {e}")
                delivered = False
            if delivered:
                result.success_count += 1
            else:
                result.failure_count += 1
        return result

    def shutdown(self, wait: bool = True) -> None:
        for pool in self._pools.values():
            pool.shutdown(wait=wait)
        close = getattr(self.native_push, "close", None)
        if close is not None:
            close()
