# -*- coding: utf-8 -*-
"""
serial_transport.py — PyQt6 QSerialPort(완전 비동기) 기반 아두이노 포트

  - readyRead → Transport.ready_read 로 그대로 전달 (줄 조립은 컨트롤러 몫)
  - errorOccurred 중 NoError/Timeout 제외 → error_occurred(str)
  - 포트는 자동 재연결하지 않는다. 실패 시 last_error 에 사유 기록
"""

from __future__ import annotations
from typing import Optional

from PyQt6.QtCore import QIODeviceBase
from PyQt6.QtSerialPort import QSerialPort

from device.transport import Transport
from lib.config import ARDUINO_BAUD


class QtSerialTransport(Transport):
    def __init__(self, port_name: str, baud: int = ARDUINO_BAUD, parent=None):
        super().__init__(port_name, parent)
        self.baud = baud
        self.last_error = ""
        self._serial: Optional[QSerialPort] = None

    def _ensure_serial_created(self):
        if self._serial is not None:
            return
        self._serial = QSerialPort(self)          # 반드시 소유 스레드에서 생성
        self._serial.setPortName(self.name)
        self._serial.setBaudRate(self.baud)
        self._serial.setDataBits(QSerialPort.DataBits.Data8)
        self._serial.setParity(QSerialPort.Parity.NoParity)
        self._serial.setStopBits(QSerialPort.StopBits.OneStop)
        self._serial.setFlowControl(QSerialPort.FlowControl.NoFlowControl)
        self._serial.readyRead.connect(self.ready_read)
        self._serial.errorOccurred.connect(self._on_serial_error)

    def _open(self) -> bool:
        self._ensure_serial_created()
        if not self._serial.open(QIODeviceBase.OpenModeFlag.ReadWrite):
            self.last_error = f"{self.name} 연결 실패: {self._serial.errorString()}"
            return False

        # 라인 제어/버퍼 초기화
        self._serial.setDataTerminalReady(True)
        self._serial.setRequestToSend(False)
        self._serial.clear(QSerialPort.Direction.AllDirections)
        self.last_error = ""
        return True

    def _close(self):
        self._serial.close()

    def _write(self, data: bytes) -> int:
        n = self._serial.write(data)
        n = int(n) if n is not None else -1
        if n < 0:
            self.last_error = f"{self.name} 전송 실패: {self._serial.errorString()}"
            return 0
        return n

    def read_all(self) -> bytes:
        with self._lock:
            if not self.is_open():
                return b""
            return bytes(self._serial.readAll())

    def is_open(self) -> bool:
        return self._serial is not None and self._serial.isOpen()

    def dispose(self):
        self.close()
        if self._serial is not None:
            self._serial.deleteLater()
            self._serial = None

    def _on_serial_error(self, err: QSerialPort.SerialPortError):
        if err in (QSerialPort.SerialPortError.NoError, QSerialPort.SerialPortError.TimeoutError):
            return
        # open() 실패는 open 반환값으로 처리
        if not self.is_open():
            return
        err_name = getattr(err, "name", str(err))
        self.last_error = f"시리얼 오류: {self._serial.errorString()} (err={err_name})"
        self.error_occurred.emit(self.last_error)
