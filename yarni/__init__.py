"""
Yarni: 一個執行緒安全的單向狀態容器。

狀態只能透過 dispatch action、由 reducer 計算新狀態來更新；
中介軟體包裹在 reducer 外層，可以檢查、轉換或攔截 action；
listener 中介軟體把每次 dispatch 廣播給 listener。
"""

from .config import ListenerConfig, StoreConfig
from .errors import (
    ErrorHandler,
    ListenerError,
    MiddlewareError,
    StoreError,
    SubscriberError,
    YarniError,
    global_error_handler,
)
from .events import Event, StateChangedEvent
from .middleware import (
    AsyncListenerMiddleware,
    BaseMiddleware,
    ListenerMiddleware,
    LoggerMiddleware,
    apply_middleware,
)
from .store import Store, create_store
from .types import (
    AsyncListener,
    Dispatcher,
    Listener,
    Middleware,
    MiddlewareFunction,
    Reducer,
    StateChangedHandler,
    StoreProtocol,
)

__version__ = "0.1.0"

# 匯出所有公開 API
__all__ = [
    # Errors
    "YarniError", "StoreError", "MiddlewareError", "ListenerError",
    "SubscriberError", "ErrorHandler", "global_error_handler",

    # Config
    "StoreConfig", "ListenerConfig",

    # Events
    "Event", "StateChangedEvent",

    # Middleware
    "apply_middleware", "BaseMiddleware", "LoggerMiddleware",
    "ListenerMiddleware", "AsyncListenerMiddleware",

    # Store
    "Store", "create_store",

    # Types
    "Reducer", "Dispatcher", "Middleware", "MiddlewareFunction",
    "StateChangedHandler", "Listener", "AsyncListener", "StoreProtocol",
]
