"""
Yarni 的事件模組。

提供有序、執行緒安全的回調集合。回調以不可變 tuple 保存，
每次新增或移除都在鎖內替換整個 tuple（copy-on-write），
通知時迭代的是當下的快照，因此通知過程中的新增與移除不會影響迭代。
"""

import threading
from contextlib import nullcontext
from typing import Any, Callable, ContextManager, Generic, Optional, Tuple, TypeVar

H = TypeVar("H", bound=Callable[..., Any])

Unsubscribe = Callable[[], None]
ErrorCallback = Callable[[Callable[..., Any], Exception], None]


class Event(Generic[H]):
    """
    有序的回調集合。

    同一個回調可以註冊多次，每次註冊彼此獨立；
    unsubscribe 只移除最近一次相同的註冊。
    """

    def __init__(self, name: Optional[str] = None) -> None:
        self.name = name
        self._handlers: Tuple[H, ...] = ()
        self._lock = threading.Lock()

    @property
    def handlers(self) -> Tuple[H, ...]:
        """當前註冊回調的快照。"""
        return self._handlers

    def __len__(self) -> int:
        return len(self._handlers)

    def __bool__(self) -> bool:
        # 空事件也是有效物件
        return True

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, handlers={len(self._handlers)})"

    def subscribe(self, handler: H) -> Unsubscribe:
        """
        註冊一個回調，追加在現有回調之後。

        Args:
            handler: 要註冊的回調

        Returns:
            取消此次註冊的函數，重複呼叫無效果
        """
        if not callable(handler):
            raise TypeError(f"handler must be callable, got {type(handler).__name__}")

        with self._lock:
            self._handlers = self._handlers + (handler,)

        return self._make_unsubscribe(handler)

    def unsubscribe(self, handler: H) -> bool:
        """
        移除一次註冊。

        Args:
            handler: 要移除的回調

        Returns:
            找到並移除時為 True，回調未註冊時為 False
        """
        with self._lock:
            handlers = self._handlers
            # 從尾端尋找，移除最近一次的註冊
            for index in range(len(handlers) - 1, -1, -1):
                if handlers[index] == handler:
                    self._handlers = handlers[:index] + handlers[index + 1:]
                    return True
        return False

    def clear(self) -> None:
        """移除所有回調。"""
        with self._lock:
            self._handlers = ()

    def emit(self, *args: Any, on_error: Optional[ErrorCallback] = None) -> None:
        """
        依註冊順序同步呼叫所有回調。

        Args:
            *args: 傳給每個回調的參數
            on_error: 未提供時，回調拋出的異常直接傳播並中斷本輪通知；
                提供時，異常交給 on_error(handler, error) 處理並繼續下一個回調
        """
        for handler in self._handlers:
            if on_error is None:
                handler(*args)
                continue
            try:
                handler(*args)
            except Exception as err:
                on_error(handler, err)

    def _make_unsubscribe(self, handler: H) -> Unsubscribe:
        done = False

        def unsubscribe() -> None:
            nonlocal done
            if done:
                return
            done = True
            self.unsubscribe(handler)

        return unsubscribe


class StateChangedEvent(Event[Callable[[Any], None]]):
    """
    Store 的狀態變更事件。

    與 Event 不同的是，新訂閱者在註冊時會立即以當前狀態被呼叫一次，
    確保每個訂閱者都有一個基準通知。

    Args:
        get_state: 取得當前狀態的函數
        lock: 與 Store 通知共用的鎖；註冊與基準通知在鎖內進行，
            使基準通知不會與正在進行的 dispatch 交錯
    """

    def __init__(
        self,
        get_state: Callable[[], Any],
        lock: Optional[ContextManager[Any]] = None,
        name: Optional[str] = None,
    ) -> None:
        super().__init__(name=name)
        self._get_state = get_state
        self._notify_lock = lock

    def subscribe(self, handler: Callable[[Any], None]) -> Unsubscribe:
        """註冊並立即以當前狀態呼叫一次；該次呼叫拋出異常時撤銷註冊並向外傳播。"""
        with self._notify_lock if self._notify_lock is not None else nullcontext():
            unsubscribe = super().subscribe(handler)
            try:
                handler(self._get_state())
            except Exception:
                unsubscribe()
                raise
        return unsubscribe
