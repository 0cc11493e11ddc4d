"""
Yarni 的中介軟體定義模組。

此模組負責把中介軟體組合成 dispatch 鏈，並提供可重用的中介軟體：
基於鉤子的 BaseMiddleware、日誌記錄用的 LoggerMiddleware，
以及把 dispatch 流程轉換為事件廣播的兩種 listener 中介軟體。
"""

import asyncio
import contextlib
import datetime
import functools
import inspect
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from typing import Any, Awaitable, Generator, Iterable, Optional, Set, Tuple

from .config import ListenerConfig
from .errors import ErrorHandler, ListenerError, MiddlewareError, callable_name, global_error_handler
from .events import Event
from .types import (
    ActionContext,
    AsyncListener,
    Dispatcher,
    Listener,
    Middleware,
    MiddlewareFunction,
    NextDispatch,
    StoreProtocol,
)

logger = logging.getLogger(__name__)


# ———— 中介軟體組合 ————
def apply_middleware(
    store: StoreProtocol[Any],
    dispatch: Dispatcher,
    middlewares: Iterable[Middleware],
) -> Dispatcher:
    """
    將中介軟體依序包裹在 dispatch 外層。

    列表中的第一個中介軟體位於最外層：進入時最先執行，離開時最後執行。
    組合本身沒有狀態，相同的輸入永遠得到相同結構的 dispatch 鏈。

    Args:
        store: 傳給每個中介軟體工廠的 Store
        dispatch: 最內層的 dispatch（通常是把 action 交給 reducer 的函數）
        middlewares: 由外到內排列的中介軟體工廠

    Returns:
        組合後的 dispatch 函數

    Raises:
        MiddlewareError: 工廠或中介軟體函數沒有返回可呼叫物件時
    """
    # 從最內層開始包裹
    for middleware in reversed(tuple(middlewares)):
        name = callable_name(middleware)
        wrap = middleware(store)
        if not callable(wrap):
            raise MiddlewareError(
                "middleware factory must return a callable that wraps the next dispatcher",
                name,
                returned=type(wrap).__name__,
            )
        dispatch = wrap(dispatch)
        if not callable(dispatch):
            raise MiddlewareError(
                "middleware must return a callable dispatcher",
                name,
                returned=type(dispatch).__name__,
            )
    return dispatch


# ———— Base Middleware ————
class BaseMiddleware:
    """
    基礎中介類，定義所有中介可能實現的鉤子。

    中介軟體可以介入動作分發的流程，在動作到達 Reducer 前、
    動作處理完成後或出現錯誤時執行自定義邏輯。
    實例本身就是中介軟體工廠，可以直接傳給 Store。
    """

    def __call__(self, store: StoreProtocol[Any]) -> MiddlewareFunction:
        def middleware(next_dispatch: NextDispatch) -> Dispatcher:
            def dispatch(action: Any) -> None:
                with self.action_context(action, store.state) as context:
                    next_dispatch(action)
                    context["next_state"] = store.state
            return dispatch
        return middleware

    def on_next(self, action: Any, prev_state: Any) -> None:
        """
        在 action 發送給下一層之前調用。

        Args:
            action: 正在 dispatch 的 Action
            prev_state: dispatch 之前的 store.state
        """

    def on_complete(self, next_state: Any, action: Any) -> None:
        """
        在下一層處理完 action 之後調用。

        Args:
            next_state: dispatch 之後的 store.state
            action: 剛剛 dispatch 的 Action
        """

    def on_error(self, error: Exception, action: Any) -> None:
        """
        如果 dispatch 過程中拋出異常，則調用此鉤子。異常隨後會繼續傳播。

        Args:
            error: 拋出的異常
            action: 導致異常的 Action
        """

    def teardown(self) -> None:
        """當 Store 清理資源時調用，用於清理中間件持有的資源。"""

    @contextlib.contextmanager
    def action_context(self, action: Any, prev_state: Any) -> Generator[ActionContext, None, None]:
        """
        以上下文管理器的形式包裝 on_next、on_complete 和 on_error 鉤子。

        子類可以覆蓋此方法，並使用 super().action_context() 來確保鉤子被呼叫。

        Args:
            action: 要分發的 Action
            prev_state: 分發前的狀態

        Yields:
            上下文數據，內部程式碼可寫入 next_state
        """
        context: ActionContext = {
            "action": action,
            "prev_state": prev_state,
            "next_state": prev_state,
            "error": None,
            "timestamp": datetime.datetime.now(),
        }

        self.on_next(action, prev_state)
        try:
            yield context
        except Exception as err:
            context["error"] = err
            self.on_error(err, action)
            raise
        self.on_complete(context["next_state"], action)


def _describe(action: Any) -> str:
    action_type = getattr(action, "type", None)
    if action_type is not None:
        return str(action_type)
    return repr(action)


# ———— LoggerMiddleware ————
class LoggerMiddleware(BaseMiddleware):
    """
    日誌中介，記錄每個 action 發送前和發送後的 state 以及耗時。

    使用場景:
    - 偵錯時需要觀察每次 state 的變化。
    - 確保 action 的執行順序正確。

    Args:
        level: 一般記錄使用的日誌等級
        logger_name: 使用的 logger 名稱，預設為本模組的 logger
    """

    def __init__(self, level: int = logging.INFO, logger_name: Optional[str] = None) -> None:
        self.level = level
        self._logger = logging.getLogger(logger_name) if logger_name else logger

    @contextlib.contextmanager
    def action_context(self, action: Any, prev_state: Any) -> Generator[ActionContext, None, None]:
        started = time.perf_counter()
        with super().action_context(action, prev_state) as context:
            yield context
        elapsed_ms = (time.perf_counter() - started) * 1000
        self._logger.log(self.level, "%s took %.2fms", _describe(action), elapsed_ms)

    def on_next(self, action: Any, prev_state: Any) -> None:
        self._logger.log(self.level, "dispatching %s", _describe(action))
        self._logger.log(self.level, "state before %s: %r", _describe(action), prev_state)

    def on_complete(self, next_state: Any, action: Any) -> None:
        self._logger.log(self.level, "state after %s: %r", _describe(action), next_state)

    def on_error(self, error: Exception, action: Any) -> None:
        self._logger.error("error in %s: %s", _describe(action), error)


# ———— ListenerMiddleware ————
class ListenerMiddleware:
    """
    在收到 action 時觸發事件的中介軟體（事件模式）。

    action 會先傳給下一層，完成後再依訂閱順序同步呼叫 action_received 的 listener，
    listener 拿到的是 action 傳下去之前的狀態。

    注意：listener 拋出的異常會傳播給 dispatch 的呼叫方，之後的 listener 不會被呼叫。
    若要確保所有 listener 都收到 action，listener 不應拋出異常，
    或改用 AsyncListenerMiddleware。

    範例:
        ```python
        listeners = ListenerMiddleware()
        listeners.action_received.subscribe(
            lambda action, state, dispatch: print(action, state)
        )
        store = Store(reducer, None, listeners.create_middleware)
        ```
    """

    def __init__(self) -> None:
        self.action_received: Event[Listener[Any]] = Event(name="action_received")

    def create_middleware(self, store: StoreProtocol[Any]) -> MiddlewareFunction:
        """
        建立綁定到 store 的中介軟體函數。

        Args:
            store: Store 實例

        Returns:
            配置函數，接收 next_dispatch 並返回新的 dispatch 函數
        """
        def middleware(next_dispatch: NextDispatch) -> Dispatcher:
            def dispatch(action: Any) -> None:
                pre_action_state = store.state
                next_dispatch(action)
                self.action_received.emit(action, pre_action_state, store.dispatch)
            return dispatch
        return middleware

    __call__ = create_middleware


# ———— AsyncListenerMiddleware ————
class AsyncListenerMiddleware:
    """
    以固定 listener 列表廣播 action 的中介軟體（非同步模式）。

    action 傳給下一層後，依列表順序呼叫每個 listener。
    listener 的同步部分在呼叫方執行緒上直接執行；若 listener 返回 awaitable，
    中介軟體不會等待它完成：有正在運行的 event loop 時建立 task，
    否則交給背景執行緒。listener 的任何失敗（同步或非同步）都只會交給
    ErrorHandler，不會影響 dispatch 呼叫方、其他 listener 或 store 的狀態。

    Args:
        *listeners: 依呼叫順序排列的 listener
        config: 背景執行緒池設定
        error_handler: 接收 listener 失敗的處理器，預設為 global_error_handler
    """

    def __init__(
        self,
        *listeners: AsyncListener[Any],
        config: Optional[ListenerConfig] = None,
        error_handler: Optional[ErrorHandler] = None,
    ) -> None:
        for listener in listeners:
            if not callable(listener):
                raise TypeError(f"listener must be callable, got {type(listener).__name__}")

        self.listeners: Tuple[AsyncListener[Any], ...] = tuple(listeners)
        self.config = config or ListenerConfig()
        self.error_handler = error_handler or global_error_handler

        self._executor: Optional[ThreadPoolExecutor] = None
        self._lock = threading.Lock()
        self._futures: Set["Future[Any]"] = set()
        self._tasks: Set["asyncio.Future[Any]"] = set()
        self._closed = False

    def create_middleware(self, store: StoreProtocol[Any]) -> MiddlewareFunction:
        """
        建立綁定到 store 的中介軟體函數。

        Args:
            store: Store 實例

        Returns:
            配置函數，接收 next_dispatch 並返回新的 dispatch 函數
        """
        def middleware(next_dispatch: NextDispatch) -> Dispatcher:
            def dispatch(action: Any) -> None:
                pre_action_state = store.state
                next_dispatch(action)
                for listener in self.listeners:
                    self._invoke(listener, action, pre_action_state, store.dispatch)
            return dispatch
        return middleware

    __call__ = create_middleware

    def _invoke(self, listener: AsyncListener[Any], action: Any, state: Any, dispatch: Dispatcher) -> None:
        if self.config.run_in_executor:
            self._submit(listener, action, self._run, listener, action, state, dispatch)
        else:
            self._run(listener, action, state, dispatch)

    def _run(self, listener: AsyncListener[Any], action: Any, state: Any, dispatch: Dispatcher) -> None:
        try:
            result = listener(action, state, dispatch)
        except Exception as err:
            self._report(listener, action, err)
            return

        if inspect.isawaitable(result):
            self._schedule(listener, action, result)

    def _schedule(self, listener: AsyncListener[Any], action: Any, awaitable: Awaitable[Any]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop is None:
            # 沒有 event loop，在背景執行緒中跑完整個 awaitable
            self._submit(listener, action, self._drive, listener, action, awaitable)
            return

        task = asyncio.ensure_future(awaitable)
        with self._lock:
            self._tasks.add(task)
        task.add_done_callback(functools.partial(self._task_done, listener, action))

    def _drive(self, listener: AsyncListener[Any], action: Any, awaitable: Awaitable[Any]) -> None:
        try:
            asyncio.run(self._complete(awaitable))
        except Exception as err:
            self._report(listener, action, err)

    def _submit(self, listener: AsyncListener[Any], action: Any, fn: Any, *args: Any) -> None:
        future: Optional["Future[Any]"] = None
        error: Optional[BaseException] = None
        with self._lock:
            if self._closed:
                error = RuntimeError("listener middleware has been shut down")
            else:
                if self._executor is None:
                    self._executor = ThreadPoolExecutor(
                        max_workers=self.config.max_workers,
                        thread_name_prefix=self.config.thread_name_prefix,
                    )
                try:
                    future = self._executor.submit(fn, *args)
                except RuntimeError as err:
                    # 執行緒池已停止，例如直譯器正在結束
                    error = err
                else:
                    self._futures.add(future)

        if future is None:
            for arg in args:
                if inspect.iscoroutine(arg):
                    arg.close()
            self._report(listener, action, error)
            return

        future.add_done_callback(self._future_done)

    def _task_done(self, listener: AsyncListener[Any], action: Any, task: "asyncio.Future[Any]") -> None:
        with self._lock:
            self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self._report(listener, action, error)

    def _future_done(self, future: "Future[Any]") -> None:
        with self._lock:
            self._futures.discard(future)
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            self._safe_handle(error)

    def _report(self, listener: AsyncListener[Any], action: Any, error: BaseException) -> None:
        name = callable_name(listener)
        wrapped = ListenerError(f"listener {name} failed: {error!r}", name, action=action)
        wrapped.__cause__ = error
        self._safe_handle(wrapped)

    def _safe_handle(self, error: BaseException) -> None:
        try:
            self.error_handler.handle(error)
        except Exception:
            logger.exception("failed to report listener error")

    async def _complete(self, awaitable: Awaitable[Any]) -> None:
        # asyncio.run 結束時會取消剩餘的 task，巢狀 dispatch 建立的 task 要先跑完
        try:
            await awaitable
        finally:
            await self._drain_tasks()

    async def _drain_tasks(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            with self._lock:
                tasks = [t for t in self._tasks if not t.done() and t.get_loop() is loop]
            if not tasks:
                return
            await asyncio.gather(*tasks, return_exceptions=True)

    async def drain(self) -> None:
        """等待目前 event loop 上與背景執行緒中所有未完成的 listener 工作。"""
        while True:
            await self._drain_tasks()
            with self._lock:
                futures = [f for f in self._futures if not f.done()]
            if not futures:
                return
            await asyncio.gather(*(asyncio.wrap_future(f) for f in futures), return_exceptions=True)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """
        阻塞等待背景執行緒中的 listener 工作完成。

        Args:
            timeout: 最長等待秒數，None 表示一直等待

        Returns:
            所有背景工作都已完成時為 True
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._lock:
                futures = [f for f in self._futures if not f.done()]
            if not futures:
                return True
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            _, not_done = wait_futures(futures, timeout=remaining)
            if not_done:
                return False

    def shutdown(self, wait: bool = True) -> None:
        """
        停止背景執行緒池，之後需要背景執行的 listener 工作會被回報為失敗。

        Args:
            wait: 是否先等待未完成的背景工作
        """
        if wait:
            self.wait()
        with self._lock:
            self._closed = True
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=wait)

    def teardown(self) -> None:
        self.shutdown(wait=True)
