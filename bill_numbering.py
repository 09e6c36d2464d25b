# bill_numbering.py - 账单编号生成
import secrets
import time
from typing import Callable, Optional

from config import BILL_NO_PREFIX


class BillNumberAllocator:
    """前缀 + 毫秒时间戳 + 4位随机数，例如 WIT17458775141971612。

    不依赖中心计数器，不保证按插入顺序递增；唯一性由 bill_no 唯一索引兜底，
    冲突时调用方重新生成（见 LedgerStore.append_numbered）。
    """

    def __init__(self,
                 clock: Optional[Callable[[], float]] = None,
                 entropy: Optional[Callable[[int], int]] = None):
        self._clock = clock or time.time
        self._entropy = entropy or secrets.randbelow

    def allocate(self, prefix: str = BILL_NO_PREFIX) -> str:
        millis = int(self._clock() * 1000)
        suffix = self._entropy(10000)
        return f"{prefix}{millis}{suffix:04d}"
