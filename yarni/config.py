"""Store 與 listener middleware 的設定模型。"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class StoreConfig(BaseModel):
    """
    Store 的設定。

    Attributes:
        name: Store 名稱，用於日誌
        isolate_subscriber_errors: 為 True 時，單一訂閱者拋出的異常會被記錄並跳過，
            不會中斷同一輪通知；預設為 False，異常直接傳播給 dispatch 呼叫方
    """

    model_config = ConfigDict(frozen=True)

    name: str = "store"
    isolate_subscriber_errors: bool = False


class ListenerConfig(BaseModel):
    """
    AsyncListenerMiddleware 的設定。

    Attributes:
        max_workers: 背景執行緒池大小，None 表示使用 ThreadPoolExecutor 的預設值
        thread_name_prefix: 背景執行緒名稱前綴
        run_in_executor: 為 True 時整個 listener 呼叫都在背景執行緒中進行
    """

    model_config = ConfigDict(frozen=True)

    max_workers: Optional[int] = Field(default=None, gt=0)
    thread_name_prefix: str = "yarni-listener"
    run_in_executor: bool = False
