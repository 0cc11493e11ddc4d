"""
Yarni 範例：計數器，展示 Store、select 與 LoggerMiddleware 的使用
"""

import logging
import sys
from pathlib import Path
from typing import NamedTuple, Optional

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from pydantic import BaseModel

from yarni import LoggerMiddleware, StoreConfig, create_store


# ====== 1. 定義狀態與 Actions ======
class CounterState(BaseModel):
    count: int = 0
    last_action: Optional[str] = None


class Action(NamedTuple):
    type: str
    payload: int = 0


def increment() -> Action:
    return Action("increment", 1)


def increment_by(amount: int) -> Action:
    return Action("incrementBy", amount)


def reset(value: int = 0) -> Action:
    return Action("reset", value)


# ====== 2. 定義 Reducer ======
def counter_reducer(state: Optional[CounterState], action: Action) -> CounterState:
    state = state or CounterState()
    if action.type in ("increment", "incrementBy"):
        return state.model_copy(update={"count": state.count + action.payload, "last_action": action.type})
    if action.type == "reset":
        return CounterState(count=action.payload, last_action=action.type)
    return state


# ====== 3. 建立 Store ======
if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(name)s %(message)s")

    with create_store(
        counter_reducer,
        CounterState(),
        LoggerMiddleware,
        config=StoreConfig(name="counter"),
    ) as store:
        # 訂閱狀態變化，只在 count 改變時通知
        store.select(lambda state: state.count).subscribe(
            on_next=lambda pair: print(f"計數變化: {pair[0]} -> {pair[1]}")
        )

        print("\n==== 開始測試基本操作 ====")
        store.dispatch(increment())
        store.dispatch(increment_by(5))
        store.dispatch(reset(10))
        store.dispatch(Action("unknown"))

        print("\n==== 最終狀態 ====")
        print(store.state.model_dump_json())
