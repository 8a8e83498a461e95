# -*- coding: utf-8 -*-
"""
line_framer.py — 조각난 바이트 스트림 → 완성된 텍스트 줄

수신 컨텍스트(append)와 소비 컨텍스트(pop_line/drain)가 다른 스레드일 수 있으므로
버퍼 변경은 전부 하나의 Lock 안에서만 한다. 메시지 해석은 Lock 밖에서.
"""

from __future__ import annotations
import re
import threading
from collections import deque
from typing import Deque, List, Optional

from lib.config import RX_MAX, LINE_MAX

_SEPARATORS = re.compile(r"[\r\n]")


class LineFramer:
    def __init__(self, rx_max: int = RX_MAX, line_max: int = LINE_MAX):
        self._lock = threading.Lock()
        self._buf = ""
        self._ready: Deque[str] = deque()
        self._rx_max = rx_max
        self._line_max = line_max
        self.overflow_count = 0
        self.truncated_count = 0

    def append(self, chunk: bytes) -> int:
        """chunk 를 누적하고 새로 완성된 줄 수를 돌려준다."""
        text = bytes(chunk).decode("ascii", errors="ignore")
        found = 0
        with self._lock:
            self._buf += text

            # RX 오버플로우 보호: 최근 RX_MAX 글자만 보존
            if len(self._buf) > self._rx_max:
                self._buf = self._buf[-self._rx_max:]
                self.overflow_count += 1

            # 앞쪽의 외톨이 개행 제거 (CR/LF 짝 잔여물)
            self._buf = self._buf.lstrip("\r\n")

            while True:
                m = _SEPARATORS.search(self._buf)
                if m is None or m.start() == 0:
                    break
                buf = self._buf
                lines = [s for s in _SEPARATORS.split(buf) if s]
                line = lines[0].strip()
                if len(line) > self._line_max:
                    line = line[:self._line_max]
                    self.truncated_count += 1
                if line:
                    self._ready.append(line)
                    found += 1

                rest = "\n".join(lines[1:])
                if buf.endswith(("\r", "\n")):
                    rest += "\n"
                self._buf = rest
        return found

    def pop_line(self) -> Optional[str]:
        with self._lock:
            return self._ready.popleft() if self._ready else None

    def drain(self) -> List[str]:
        with self._lock:
            lines = list(self._ready)
            self._ready.clear()
        return lines

    def feed(self, chunk: bytes) -> List[str]:
        self.append(chunk)
        return self.drain()

    def clear(self):
        with self._lock:
            self._buf = ""
            self._ready.clear()

    @property
    def pending(self) -> str:
        with self._lock:
            return self._buf
