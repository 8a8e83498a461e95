# -*- coding: utf-8 -*-
"""
simulator.py — 네이티브 아두이노 에뮬레이터를 시리얼 포트처럼 감싸는 Transport

에뮬레이터 내부(펌웨어 본체)는 블랙박스다. 필요한 계약은 EmulationEngine 뿐:
  setup / step(loop 1회) / write(호스트→MCU) / read_output(MCU→호스트)
  read_eeprom / read_pwm

포트가 열리면 SIMULATOR_TICK_MS 주기의 QTimer 가 step() 을 호출하고,
엔진이 내보낸 바이트를 하드웨어에서 온 것처럼 ready_read 로 알린다.
닫기/폐기 시 타이머도 멈춘다.
"""

from __future__ import annotations
import ctypes
from pathlib import Path
from typing import List, Optional, Protocol, Tuple, Union

from PyQt6.QtCore import QTimer

from device.transport import Transport
from lib.config import SIMULATOR_LIB_PATH, SIMULATOR_TICK_MS, SIMULATOR_PORT_NAME


class EmulationEngine(Protocol):
    def setup(self) -> None: ...
    def step(self) -> None: ...
    def write(self, data: bytes) -> None: ...
    def read_output(self) -> bytes: ...
    def read_eeprom(self) -> bytes: ...
    def read_pwm(self) -> Tuple[List[int], List[int]]: ...


class NativeArduinoEngine:
    """ArduinoMock 공유 라이브러리(ctypes) 래퍼."""

    _READ_CHUNK = 256

    def __init__(self, lib_path: Union[str, Path] = SIMULATOR_LIB_PATH):
        self.lib_path = Path(lib_path)
        self._dll = ctypes.CDLL(str(self.lib_path))
        self._setup_dll_functions()

    def _setup_dll_functions(self):
        d = self._dll
        d.Arduino_Setup.argtypes = []
        d.Arduino_Setup.restype = None
        d.Arduino_Loop.argtypes = []
        d.Arduino_Loop.restype = None
        d.EEPROM_Size.argtypes = []
        d.EEPROM_Size.restype = ctypes.c_int
        d.EEPROM_Read.argtypes = [ctypes.POINTER(ctypes.c_uint8), ctypes.c_int]
        d.EEPROM_Read.restype = None
        d.PWM_NumServos.argtypes = []
        d.PWM_NumServos.restype = ctypes.c_int
        d.PWM_Read.argtypes = [ctypes.POINTER(ctypes.c_uint16), ctypes.POINTER(ctypes.c_uint16)]
        d.PWM_Read.restype = None
        d.Serial_HostWrite.argtypes = [ctypes.POINTER(ctypes.c_uint8), ctypes.c_int]
        d.Serial_HostWrite.restype = None
        d.Serial_HostRead.argtypes = [ctypes.POINTER(ctypes.c_uint8), ctypes.c_int]
        d.Serial_HostRead.restype = ctypes.c_int

    def setup(self):
        self._dll.Arduino_Setup()

    def step(self):
        self._dll.Arduino_Loop()

    def write(self, data: bytes):
        buf = (ctypes.c_uint8 * len(data)).from_buffer_copy(data)
        self._dll.Serial_HostWrite(buf, len(data))

    def read_output(self) -> bytes:
        out = bytearray()
        buf = (ctypes.c_uint8 * self._READ_CHUNK)()
        while True:
            n = self._dll.Serial_HostRead(buf, self._READ_CHUNK)
            if n <= 0:
                break
            out.extend(bytes(buf[:n]))
            if n < self._READ_CHUNK:
                break
        return bytes(out)

    def read_eeprom(self) -> bytes:
        size = self._dll.EEPROM_Size()
        buf = (ctypes.c_uint8 * size)()
        self._dll.EEPROM_Read(buf, size)
        return bytes(buf)

    def read_pwm(self) -> Tuple[List[int], List[int]]:
        n = self._dll.PWM_NumServos()
        on = (ctypes.c_uint16 * n)()
        off = (ctypes.c_uint16 * n)()
        self._dll.PWM_Read(on, off)
        return list(on), list(off)


class SimulatorTransport(Transport):
    def __init__(self, engine: EmulationEngine, tick_ms: int = SIMULATOR_TICK_MS, parent=None):
        super().__init__(SIMULATOR_PORT_NAME, parent)
        self.engine: Optional[EmulationEngine] = engine
        self.tick_ms = tick_ms
        self._open_flag = False
        self._set_up = False
        self._rx = bytearray()
        self._loop_timer: Optional[QTimer] = None

    def _ensure_timer_created(self):
        if self._loop_timer is None:
            self._loop_timer = QTimer(self)
            self._loop_timer.setInterval(self.tick_ms)
            self._loop_timer.timeout.connect(self.step)

    def _open(self) -> bool:
        if self.engine is None:
            return False
        if not self._set_up:
            self.engine.setup()
            self._set_up = True
            on, _off = self.engine.read_pwm()
            eeprom = self.engine.read_eeprom()
            self.status_message.emit("Simulator", f"PWM 서보 {len(on)}개, EEPROM {len(eeprom)} bytes")

        self._open_flag = True
        self._rx.clear()
        self._ensure_timer_created()
        self._loop_timer.start()
        self.status_message.emit("Simulator", "loop 타이머 시작")
        return True

    def _close(self):
        self._open_flag = False
        if self._loop_timer:
            self._loop_timer.stop()
        self._rx.clear()
        self.status_message.emit("Simulator", "loop 타이머 정지")

    def _write(self, data: bytes) -> int:
        self.engine.write(data)
        return len(data)

    def read_all(self) -> bytes:
        with self._lock:
            data = bytes(self._rx)
            self._rx.clear()
        return data

    def is_open(self) -> bool:
        return self._open_flag

    def step(self):
        """에뮬레이터 loop() 1회 + 나온 바이트를 수신 버퍼로."""
        with self._lock:
            if not self._open_flag:
                return
            self.engine.step()
            out = self.engine.read_output()
            if out:
                self._rx.extend(out)
        if out:
            self.ready_read.emit()

    @property
    def loop_running(self) -> bool:
        return self._loop_timer is not None and self._loop_timer.isActive()

    def dispose(self):
        self.close()
        if self._loop_timer:
            self._loop_timer.deleteLater()
            self._loop_timer = None
        self.engine = None
