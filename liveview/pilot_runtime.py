import asyncio
import inspect
import logging
import threading


class LiveRuntime:
    """Runs the engine's event loop on a dedicated daemon thread.

    Engine objects are only touched from that loop; other threads hand work
    over with ``call()``.
    """

    def __init__(self, name="pilot-liveview"):
        self.log = logging.getLogger("pilot.runtime")
        self.loop = asyncio.new_event_loop()
        self._ready = threading.Event()
        self._worker = threading.Thread(target=self._run, name=name, daemon=True)
        self._started = False
        self._stopped = False

    def _run(self):
        asyncio.set_event_loop(self.loop)
        self.loop.call_soon(self._ready.set)
        self.loop.run_forever()

    @property
    def running(self):
        return self._started and not self._stopped

    def start(self):
        if self._started:
            return
        self._started = True
        self._worker.start()
        self._ready.wait(timeout=5.0)
        self.log.info("Event loop thread started")

    def call(self, fn, *args, timeout=30.0, **kwargs):
        if not self.running:
            raise RuntimeError("runtime is not running")

        async def runner():
            result = fn(*args, **kwargs)
            if inspect.isawaitable(result):
                result = await result
            return result

        future = asyncio.run_coroutine_threadsafe(runner(), self.loop)
        return future.result(timeout)

    def stop(self, shutdown=None, timeout=5.0):
        if not self.running:
            return
        if shutdown is not None:
            try:
                self.call(shutdown, timeout=timeout)
            except Exception:
                self.log.exception("Shutdown hook failed")
        self._stopped = True
        self.loop.call_soon_threadsafe(self.loop.stop)
        self._worker.join(timeout=timeout)
        if not self._worker.is_alive():
            self.loop.close()
        self.log.info("Event loop thread stopped")
