"""
Yarni 錯誤處理模組。

定義所有 Yarni 異常的層級結構，以及一個集中式錯誤處理器，
用於記錄那些不能向 dispatch 呼叫方傳播的錯誤（例如非同步 listener 的失敗）。
"""

import logging
import threading
import traceback
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class YarniError(Exception):
    """所有 Yarni 異常的基礎類。"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.traceback = "".join(traceback.format_stack()[:-1])

    def to_dict(self) -> Dict[str, Any]:
        """
        將異常轉換為字典，方便記錄與上報。

        Returns:
            包含錯誤類型、訊息與細節的字典
        """
        data = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "details": dict(self.details),
        }
        if self.__cause__ is not None:
            data["cause"] = repr(self.__cause__)
        return data

    def __str__(self) -> str:
        if not self.details:
            return self.message
        details = ", ".join(f"{k}={v!r}" for k, v in self.details.items())
        return f"{self.message} ({details})"


class StoreError(YarniError):
    """與 Store 相關的錯誤。"""

    def __init__(self, message: str, operation: str, **kwargs: Any) -> None:
        super().__init__(message, {"operation": operation, **kwargs})
        self.operation = operation


class MiddlewareError(YarniError):
    """與 Middleware 組合相關的錯誤。"""

    def __init__(self, message: str, middleware_name: str, **kwargs: Any) -> None:
        super().__init__(message, {"middleware": middleware_name, **kwargs})
        self.middleware_name = middleware_name


class ListenerError(YarniError):
    """被隔離的 listener 錯誤，原始異常保存在 __cause__。"""

    def __init__(
        self,
        message: str,
        listener_name: str,
        action: Any = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, {"listener": listener_name, "action": action, **kwargs})
        self.listener_name = listener_name
        self.action = action


class SubscriberError(YarniError):
    """被隔離的 state_changed 訂閱者錯誤。"""

    def __init__(self, message: str, subscriber_name: str, **kwargs: Any) -> None:
        super().__init__(message, {"subscriber": subscriber_name, **kwargs})
        self.subscriber_name = subscriber_name


def callable_name(fn: Any) -> str:
    """取得可呼叫物件的可讀名稱，用於錯誤訊息。"""
    name = getattr(fn, "__qualname__", None) or getattr(fn, "__name__", None)
    if name is None:
        name = type(fn).__qualname__
    return name


class ErrorHandler:
    """
    集中式錯誤處理器，用於捕獲、日誌記錄和錯誤報告。

    Args:
        log_to_console: 是否透過 logging 輸出錯誤
        log_to_file: 是否額外寫入日誌檔案
        log_file: 日誌檔案路徑，log_to_file 為 True 時必填
    """

    def __init__(
        self,
        log_to_console: bool = True,
        log_to_file: bool = False,
        log_file: Optional[str] = None,
    ) -> None:
        if log_to_file and not log_file:
            raise ValueError("log_file is required when log_to_file is enabled")

        self.log_to_console = log_to_console
        self.log_to_file = log_to_file
        self.log_file = log_file
        self.handlers: List[Callable[[YarniError], None]] = []
        self._lock = threading.Lock()
        self._file_logger: Optional[logging.Logger] = None
        self._file_handler: Optional[logging.FileHandler] = None

        if log_to_file:
            self._file_logger = logging.getLogger(f"{__name__}.file.{id(self)}")
            self._file_logger.propagate = False
            self._file_handler = logging.FileHandler(log_file, encoding="utf-8")
            self._file_handler.setFormatter(
                logging.Formatter("%(asctime)s %(levelname)s %(message)s")
            )
            self._file_logger.addHandler(self._file_handler)

    def register_handler(self, handler: Callable[[YarniError], None]) -> None:
        """註冊一個錯誤回調，每次 handle 時都會被調用。"""
        with self._lock:
            self.handlers = [*self.handlers, handler]

    def unregister_handler(self, handler: Callable[[YarniError], None]) -> None:
        """移除一個已註冊的錯誤回調，不存在時忽略。"""
        with self._lock:
            self.handlers = [h for h in self.handlers if h != handler]

    def handle(self, error: BaseException) -> None:
        """
        處理一個錯誤：記錄日誌並通知所有已註冊的回調。

        非 YarniError 的異常會先包裝為 YarniError。

        Args:
            error: 要處理的異常
        """
        if not isinstance(error, YarniError):
            wrapped = YarniError(str(error) or error.__class__.__name__)
            wrapped.__cause__ = error
            error = wrapped

        exc_info = error.__cause__ or error
        if self.log_to_console:
            logger.error("%s", error, exc_info=(type(exc_info), exc_info, exc_info.__traceback__))
        file_logger = self._file_logger
        if file_logger is not None:
            file_logger.error(
                "%s", error, exc_info=(type(exc_info), exc_info, exc_info.__traceback__)
            )

        for handler in self.handlers:
            try:
                handler(error)
            except Exception:
                # 錯誤處理器本身失敗只記錄，不再傳播
                logger.exception("error handler %s failed", callable_name(handler))

    def close(self) -> None:
        """關閉日誌檔案；之後的錯誤只會記錄到 console 與回調。重複呼叫無效果。"""
        with self._lock:
            file_logger, self._file_logger = self._file_logger, None
            file_handler, self._file_handler = self._file_handler, None
        if file_logger is not None and file_handler is not None:
            file_logger.removeHandler(file_handler)
            file_handler.close()


# 單例錯誤處理器
global_error_handler = ErrorHandler()
