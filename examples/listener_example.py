"""
Yarni 範例：兩種 listener 中介軟體

- ListenerMiddleware：事件模式，listener 在 dispatch 的呼叫方執行緒同步執行
- AsyncListenerMiddleware：固定列表，協程 listener 在背景完成，失敗只會被記錄
"""

import asyncio
import logging
import sys
import threading
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from yarni import (
    AsyncListenerMiddleware,
    ErrorHandler,
    ListenerConfig,
    ListenerMiddleware,
    create_store,
)


def todo_reducer(state, action):
    state = state or ()
    kind, payload = action
    if kind == "add":
        return state + (payload,)
    if kind == "saved":
        return tuple(f"{item} (saved)" if item == payload else item for item in state)
    return state


def audit(action, state, dispatch):
    print(f"[audit] {action} 之前共有 {len(state or ())} 項")


async def save_to_server(action, state, dispatch):
    kind, payload = action
    if kind != "add":
        return
    await asyncio.sleep(0.1)
    print(f"[save] {payload} 已儲存於 {threading.current_thread().name}")
    dispatch(("saved", payload))


def flaky(action, state, dispatch):
    raise ValueError(f"無法處理 {action}")


def event_mode():
    print("\n==== 事件模式 ====")
    listeners = ListenerMiddleware()
    listeners.action_received.subscribe(audit)
    store = create_store(todo_reducer, None, listeners.create_middleware)
    store.dispatch(("add", "買牛奶"))
    store.dispatch(("add", "寫報告"))
    print(store.state)


def async_mode():
    print("\n==== 非同步模式 ====")
    errors = ErrorHandler()
    errors.register_handler(lambda error: print(f"[error] {error.message}"))
    listeners = AsyncListenerMiddleware(
        audit,
        save_to_server,
        flaky,
        config=ListenerConfig(max_workers=2),
        error_handler=errors,
    )
    with create_store(todo_reducer, None, listeners) as store:
        store.dispatch(("add", "買牛奶"))
        print("dispatch 已返回，背景工作仍在進行")
        listeners.wait(timeout=5)
        print(store.state)


if __name__ == "__main__":
    logging.basicConfig(level=logging.WARNING)
    event_mode()
    async_mode()
