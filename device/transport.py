# device/transport.py
"""
아두이노와 주고받는 바이트 채널의 공통 인터페이스.

구현체:
  - MockTransport        : 열기 성공, 쓰기는 버림, 수신 없음
  - QtSerialTransport    : 실제 시리얼 포트 (device/serial_transport.py)
  - SimulatorTransport   : 네이티브 에뮬레이터 구동 (device/simulator.py)

쓰기와 닫기는 같은 RLock 으로 직렬화한다 (close 도중 write 끼어들기 방지).
닫힌 상태의 write 는 조용히 0 을 돌려준다.
"""

from __future__ import annotations
import threading

from PyQt6.QtCore import QObject, pyqtSignal as Signal

from lib.config import ARDUINO_NEWLINE


class Transport(QObject):
    ready_read = Signal()          # 새 바이트 도착 (수신 컨텍스트에서 발생할 수 있음)
    error_occurred = Signal(str)   # 런타임 포트 오류
    status_message = Signal(str, str)

    def __init__(self, name: str = "", parent=None):
        super().__init__(parent)
        self.name = name
        self.newline = ARDUINO_NEWLINE
        self._lock = threading.RLock()

    # ---------- 하위 클래스 구현 ----------
    def _open(self) -> bool:
        raise NotImplementedError

    def _close(self):
        raise NotImplementedError

    def _write(self, data: bytes) -> int:
        raise NotImplementedError

    def read_all(self) -> bytes:
        raise NotImplementedError

    def is_open(self) -> bool:
        raise NotImplementedError

    # ---------- 공개 API ----------
    def open(self) -> bool:
        with self._lock:
            if self.is_open():
                return True
            return self._open()

    def close(self):
        with self._lock:
            if not self.is_open():
                return
            self._close()

    def write(self, data: bytes) -> int:
        with self._lock:
            if not self.is_open():
                return 0
            return self._write(bytes(data))

    def write_line(self, text: str) -> int:
        return self.write((text + self.newline).encode("ascii"))

    def dispose(self):
        self.close()


class MockTransport(Transport):
    """하드웨어/시뮬레이션 없이 UI 만 띄울 때 쓰는 더미 포트."""

    def __init__(self, name: str = "Mock", parent=None):
        super().__init__(name, parent)
        self._open_flag = False

    def _open(self) -> bool:
        self._open_flag = True
        return True

    def _close(self):
        self._open_flag = False

    def _write(self, data: bytes) -> int:
        return len(data)

    def read_all(self) -> bytes:
        return b""

    def is_open(self) -> bool:
        return self._open_flag
