"""Test doubles: a recording transport and a scripted emulation engine."""

from __future__ import annotations

from typing import List, Optional, Tuple

from device.transport import Transport
from lib.protocol import Command, Frame, parse_frame, RESET_LINE

RESET_BYTES = (RESET_LINE + "\n").encode("ascii")


class RecordingTransport(Transport):
    """In-memory transport that records writes and lets tests inject bytes."""

    def __init__(self, name: str = "COM_TEST", open_ok: bool = True, parent=None):
        super().__init__(name, parent)
        self.open_ok = open_ok
        self.last_error = "" if open_ok else "no such port"
        self.written: List[bytes] = []
        self.open_calls = 0
        self.disposed = False
        self._open_flag = False
        self._rx = bytearray()

    def _open(self) -> bool:
        self.open_calls += 1
        self._open_flag = self.open_ok
        return self.open_ok

    def _close(self):
        self._open_flag = False

    def _write(self, data: bytes) -> int:
        self.written.append(data)
        return len(data)

    def read_all(self) -> bytes:
        with self._lock:
            data = bytes(self._rx)
            self._rx.clear()
        return data

    def is_open(self) -> bool:
        return self._open_flag

    def dispose(self):
        super().dispose()
        self.disposed = True

    def inject(self, data):
        if isinstance(data, str):
            data = data.encode("ascii")
        with self._lock:
            self._rx.extend(data)
        self.ready_read.emit()

    def frames(self) -> List[Frame]:
        return [parse_frame(w) for w in self.written if w != RESET_BYTES]

    def commands(self) -> List[Command]:
        return [Command(f.command) for f in self.frames()]

    def reset_count(self) -> int:
        return sum(1 for w in self.written if w == RESET_BYTES)


class FakeArduino:
    """Scripted stand-in for the native firmware emulation library."""

    def __init__(self, servos: Optional[List[Tuple[float, float, float, float, float]]] = None):
        self.servos = servos if servos is not None else [
            (1.0, 0.5, 0.1, 1.0, 90.0),
            (2.0, 0.25, 0.2, 0.5, 45.0),
        ]
        self.setup_calls = 0
        self.steps = 0
        self.received = bytearray()
        self.frames: List[Frame] = []
        self._out = bytearray()

    def setup(self):
        self.setup_calls += 1

    def step(self):
        self.steps += 1
        while self.received:
            if self.received.startswith(RESET_BYTES):
                del self.received[:len(RESET_BYTES)]
                self._out += b"RST ACK\r\n"
                continue
            length = self.received[0]
            if len(self.received) < length:
                break
            frame = parse_frame(bytes(self.received[:length]))
            del self.received[:length]
            if frame is not None:
                self.frames.append(frame)
                self._answer(frame)

    def _answer(self, frame: Frame):
        n = len(self.servos)
        if frame.command == Command.GET_NUM_SERVOS:
            self._out += f"NS {n}\r\n".encode()
        elif frame.command == Command.GET_SERVO_PARAMS:
            for i, (p, i_, d, lam, sp) in enumerate(self.servos):
                self._out += f"SP {i} {p} {i_} {d} {lam} {sp}\r\n".encode()
        elif frame.command == Command.GET_SERVO_DATA:
            count = n if frame.payload[0] == 0x80 else min(frame.payload[0], n)
            for i in range(count):
                sp = self.servos[i][4]
                self._out += f"SD {i} {sp - 1.0} {sp} 0.0 0.0\r\n".encode()
        elif frame.command == Command.GET_GLOBAL_VARS:
            self._out += f"GV {n} 1 100.0 0.0 180.0 0.5\r\n".encode()
        else:
            self._out += b"OK\r\n"

    def write(self, data: bytes):
        self.received.extend(data)

    def read_output(self) -> bytes:
        data = bytes(self._out)
        self._out.clear()
        return data

    def read_eeprom(self) -> bytes:
        return bytes(64)

    def read_pwm(self):
        return [0] * 16, [0] * 16
