"""
Yarni 的類型定義模組。

集中定義 reducer、dispatcher、middleware 與 listener 的函數簽名，
供 store 與 middleware 模組共用。
"""

from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, Protocol, TypedDict, TypeVar, Union

# 類型變數
S = TypeVar("S")  # 狀態類型
S_co = TypeVar("S_co", covariant=True)

# reducer: (前一個狀態, action) -> 新狀態
Reducer = Callable[[Optional[S], Any], Optional[S]]

# dispatcher: 接收 action，執行（可能被包裹的）狀態轉換
Dispatcher = Callable[[Any], None]
NextDispatch = Dispatcher

# 中介軟體函數: 接收下一層 dispatcher，返回新的 dispatcher
MiddlewareFunction = Callable[[Dispatcher], Dispatcher]

# 狀態變更回調
StateChangedHandler = Callable[[Optional[S]], None]


class StoreProtocol(Protocol[S_co]):
    """中介軟體與 listener 可見的 Store 介面。"""

    @property
    def state(self) -> Optional[S_co]:
        """當前狀態。"""
        ...

    def dispatch(self, action: Any) -> None:
        """分發一個 action。"""
        ...


# 中介軟體工廠: 接收 Store，返回中介軟體函數
Middleware = Callable[[StoreProtocol[Any]], MiddlewareFunction]

# listener: (action, action 前的狀態, dispatch)
Listener = Callable[[Any, Optional[S], Dispatcher], None]

# 非同步 listener 可以返回 awaitable，middleware 不會等待它完成
AsyncListener = Callable[[Any, Optional[S], Dispatcher], Union[None, Awaitable[None]]]


class ActionContext(TypedDict, total=False):
    """BaseMiddleware.action_context 產生的上下文數據。"""

    action: Any
    prev_state: Any
    next_state: Any
    error: Optional[BaseException]
    timestamp: datetime
