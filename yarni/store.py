import inspect
import logging
import threading
from collections import deque
from typing import Any, Callable, Deque, Generic, List, Optional, Tuple

from reactivex import Observable, create
from reactivex import operators as ops
from reactivex.abc import ObserverBase, SchedulerBase
from reactivex.disposable import Disposable

from .config import StoreConfig
from .errors import ErrorHandler, StoreError, SubscriberError, callable_name, global_error_handler
from .events import StateChangedEvent
from .middleware import apply_middleware
from .types import Dispatcher, Middleware, Reducer, S

logger = logging.getLogger(__name__)


class Store(Generic[S]):
    """
    狀態容器，管理應用狀態並通知訂閱者狀態變更。

    狀態只能透過 dispatch 一個 action、由 reducer 計算新狀態來更新。
    中介軟體在建構時一次組合完成，列表中的第一個位於最外層。

    多個執行緒可以同時呼叫 dispatch：reducer 的「讀取、計算、寫入」與隨後的
    通知在同一把可重入鎖內進行，因此同一時間只有一個 reducer 在執行，
    訂閱者看到的狀態順序與 dispatch 被序列化的順序一致。
    在同一執行緒上的巢狀 dispatch（例如訂閱者或 listener 再次 dispatch）不會死鎖。
    訂閱者在通知過程中發出的 dispatch 會立即套用 reducer，但其通知排在
    當前這一輪之後，由最外層的通知迴圈依序送出，因此每個訂閱者看到的狀態順序相同。
    訂閱者異常向外傳播時，尚未送出的通知會被丟棄。

    範例:
        ```python
        store = Store(lambda state, action: state + action, 0)
        store.state_changed.subscribe(print)  # 立即印出 0
        store.dispatch(5)                     # 印出 5
        ```
    """

    def __init__(
        self,
        reducer: Reducer[S],
        initial_state: Optional[S] = None,
        *middlewares: Middleware,
        config: Optional[StoreConfig] = None,
        error_handler: Optional[ErrorHandler] = None,
    ) -> None:
        """
        建立 Store。不會呼叫 reducer。

        Args:
            reducer: 純函數 (state, action) -> new_state
            initial_state: 初始狀態，預設為 None
            *middlewares: 由外到內排列的中介軟體工廠；類別會先無參數實例化
            config: Store 設定
            error_handler: 隔離訂閱者錯誤時使用的處理器，預設為 global_error_handler

        Raises:
            StoreError: reducer 不可呼叫時
            MiddlewareError: 中介軟體組合失敗時
        """
        if not callable(reducer):
            raise StoreError(
                "reducer must be callable",
                "init",
                reducer_type=type(reducer).__name__,
            )

        self.config = config or StoreConfig()
        self.error_handler = error_handler or global_error_handler
        self._reducer = reducer
        # 寫入狀態與通知共用的鎖
        self._lock = threading.RLock()
        self._state: Optional[S] = initial_state
        self._torn_down = False
        # 等待通知的狀態，只在持有 _lock 時存取
        self._pending: Deque[Any] = deque()
        self._notifying = False
        self.state_changed = StateChangedEvent(
            lambda: self._state, lock=self._lock, name=f"{self.config.name}.state_changed"
        )
        # 接受類和實例，如果是類則直接實例化
        self._middleware: List[Any] = [
            m() if inspect.isclass(m) else m for m in middlewares
        ]
        self._dispatch: Dispatcher = apply_middleware(self, self._dispatch_core, self._middleware)

        logger.debug(
            "store %s created with %d middleware(s)", self.config.name, len(self._middleware)
        )

    @property
    def state(self) -> Optional[S]:
        """最近一次提交的狀態，不會阻塞。"""
        return self._state

    @property
    def middleware(self) -> Tuple[Any, ...]:
        """已組合的中介軟體，由外到內。"""
        return tuple(self._middleware)

    def dispatch(self, action: Any) -> None:
        """
        分發一個動作，經過所有中介軟體後交給 reducer。

        reducer 或中介軟體拋出的異常會直接傳播給呼叫方。

        Args:
            action: 任意動作，可以是 None
        """
        self._dispatch(action)

    def _dispatch_core(self, action: Any) -> None:
        """最內層的 dispatch：套用 reducer、寫入狀態並通知訂閱者。"""
        with self._lock:
            logger.debug("store %s reducing %r", self.config.name, action)
            # reducer 成功返回後才寫入
            next_state = self._reducer(self._state, action)
            self._state = next_state
            self._pending.append(next_state)
            if self._notifying:
                # 巢狀 dispatch：由外層的通知迴圈依序送出
                return
            self._notifying = True
            try:
                while self._pending:
                    self._notify(self._pending.popleft())
            finally:
                self._notifying = False
                self._pending.clear()

    def _notify(self, state: Any) -> None:
        if self.config.isolate_subscriber_errors:
            self.state_changed.emit(state, on_error=self._report_subscriber_error)
        else:
            self.state_changed.emit(state)

    def _report_subscriber_error(self, subscriber: Callable[..., Any], error: Exception) -> None:
        name = callable_name(subscriber)
        wrapped = SubscriberError(f"subscriber {name} failed: {error!r}", name, store=self.config.name)
        wrapped.__cause__ = error
        self.error_handler.handle(wrapped)

    def select(self, selector: Optional[Callable[[Optional[S]], Any]] = None) -> Observable:
        """
        選擇狀態的一部分進行觀察。

        訂閱時立即發送一次當前值，之後只在選中的值改變時發送。

        Args:
            selector: 一個函數，接收整個狀態並返回希望觀察的部分；None 表示整個狀態

        Returns:
            一個可觀察對象，發送 (舊值, 新值) 元組，第一次的舊值為 None
        """
        def subscribe(observer: ObserverBase[Any], scheduler: Optional[SchedulerBase] = None) -> Disposable:
            return Disposable(self.state_changed.subscribe(observer.on_next))

        mapper = selector if selector is not None else (lambda state: state)
        return create(subscribe).pipe(
            ops.map(mapper),
            ops.distinct_until_changed(),
            ops.scan(lambda pair, value: (pair[1], value), (None, None)),
        )

    def teardown(self) -> None:
        """清理中介軟體持有的資源（例如背景執行緒池）。重複呼叫無效果。"""
        with self._lock:
            if self._torn_down:
                return
            self._torn_down = True
        for middleware in self._middleware:
            teardown = getattr(middleware, "teardown", None)
            if teardown is None:
                # 綁定方法形式的中介軟體工廠，例如 listeners.create_middleware
                owner = getattr(middleware, "__self__", None)
                teardown = getattr(owner, "teardown", None)
            if callable(teardown):
                teardown()
        logger.debug("store %s torn down", self.config.name)

    def __enter__(self) -> "Store[S]":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.teardown()


def create_store(
    reducer: Reducer[S],
    initial_state: Optional[S] = None,
    *middlewares: Middleware,
    config: Optional[StoreConfig] = None,
    error_handler: Optional[ErrorHandler] = None,
) -> Store[S]:
    """
    創建一個新的 Store 實例。

    Args:
        reducer: 純函數 (state, action) -> new_state
        initial_state: 初始狀態
        *middlewares: 由外到內排列的中介軟體工廠
        config: Store 設定
        error_handler: 隔離訂閱者錯誤時使用的處理器

    Returns:
        Store: 新創建的 Store 實例。
    """
    return Store(reducer, initial_state, *middlewares, config=config, error_handler=error_handler)
