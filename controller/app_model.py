# controller/app_model.py
"""
아두이노와 동기화되는 데이터 모델.

모든 setter 는 값이 같으면 무시하고, 바뀌면 property_changed(이름)를 내보낸다.
모델 변경은 모델 스레드(컨트롤러가 사는 스레드) 한 곳에서만 한다.
시계열 버퍼만은 그래프(UI) 스레드가 읽어가므로 별도 Lock 으로 보호한다.
"""

from __future__ import annotations
import threading
from typing import Dict, Iterator, List, Optional, Tuple

import numpy as np
from PyQt6.QtCore import QObject, pyqtSignal as Signal

from lib.config import TIME_SERIES_LENGTH_SEC
from lib.protocol import GlobalVar


def _observable(name: str, doc: str = ""):
    attr = "_" + name

    def fget(self):
        return getattr(self, attr)

    def fset(self, value):
        if getattr(self, attr) == value:
            return
        setattr(self, attr, value)
        self.property_changed.emit(name)

    return property(fget, fset, doc=doc)


class ServoChannel(QObject):
    property_changed = Signal(str)
    time_point_recorded = Signal()

    # 아두이노로 다시 써야 하는 튜닝 값
    TUNABLES = ("p", "i", "d", "d_lambda", "set_point", "input_min", "input_max")
    # 아두이노에서 읽기만 하는 값
    TELEMETRY = ("input", "output", "integrator", "d_filtered")

    p = _observable("p")
    i = _observable("i")
    d = _observable("d")
    d_lambda = _observable("d_lambda", "D 항 저역 필터 계수")
    set_point = _observable("set_point")
    input_min = _observable("input_min")
    input_max = _observable("input_max")

    input = _observable("input")
    output = _observable("output")
    integrator = _observable("integrator")
    d_filtered = _observable("d_filtered")

    def __init__(self, servo_id: int, parent=None):
        super().__init__(parent)
        self._servo_id = servo_id

        self._p = 0.0
        self._i = 0.0
        self._d = 0.0
        self._d_lambda = 1.0
        self._set_point = 0.0
        self._input_min = 1.0
        self._input_max = 0.0

        self._input = 0.0
        self._output = 0.0
        self._integrator = 0.0
        self._d_filtered = 0.0

        # 그래프용 시계열 (네 리스트 길이는 항상 같다)
        self._ts_lock = threading.Lock()
        self.times: List[float] = []
        self.set_points: List[float] = []
        self.inputs: List[float] = []
        self.outputs: List[float] = []

    @property
    def servo_id(self) -> int:
        return self._servo_id

    def record_time_point(self, elapsed_s: float):
        """현재 set_point/input/output 을 elapsed_s 시각으로 기록하고 10초 밖은 잘라낸다."""
        with self._ts_lock:
            # 시간이 거꾸로 가면(타이머 재시작 등) 시계열을 새로 시작
            if self.times and elapsed_s < self.times[-1]:
                self._clear_series()

            self.times.append(elapsed_s)
            self.set_points.append(self._set_point)
            self.inputs.append(self._input)
            self.outputs.append(self._output)

            last = self.times[-1]
            remove = 0
            for t in self.times:
                if last - t <= TIME_SERIES_LENGTH_SEC:
                    break
                remove += 1
            if remove:
                del self.times[:remove]
                del self.set_points[:remove]
                del self.inputs[:remove]
                del self.outputs[:remove]

        self.time_point_recorded.emit()

    def clear_time_series(self):
        with self._ts_lock:
            self._clear_series()

    def _clear_series(self):
        self.times.clear()
        self.set_points.clear()
        self.inputs.clear()
        self.outputs.clear()

    def time_series(self) -> List[Tuple[str, np.ndarray, np.ndarray]]:
        """(이름, x, y) 스냅샷. 샘플이 없으면 빈 리스트."""
        with self._ts_lock:
            if not self.times:
                return []
            x = np.array(self.times, dtype=float)
            return [
                ("SetPoint", x, np.array(self.set_points, dtype=float)),
                ("Input", x, np.array(self.inputs, dtype=float)),
                ("Output", x, np.array(self.outputs, dtype=float)),
            ]

    def __repr__(self) -> str:
        return f"ServoChannel(id={self._servo_id}, P={self._p}, I={self._i}, D={self._d}, SP={self._set_point})"


class GlobalVariable(QObject):
    property_changed = Signal(str)

    value = _observable("value")

    def __init__(self, variable: GlobalVar, value: float = 0.0, parent=None):
        super().__init__(parent)
        self._variable = GlobalVar(variable)
        self._value = value

    @property
    def variable(self) -> GlobalVar:
        return self._variable


class ServoCollection(QObject):
    """순서 = id. 추가/삭제를 알려서 구독자가 채널별 연결을 옮길 수 있게 한다."""

    items_added = Signal(object)
    items_removed = Signal(object)

    def __init__(self, parent=None):
        super().__init__(parent)
        self._items: List[ServoChannel] = []

    def append(self, servo: ServoChannel):
        if servo.servo_id != len(self._items):
            raise ValueError(f"servo id {servo.servo_id} != index {len(self._items)}")
        self._items.append(servo)
        self.items_added.emit([servo])

    def clear(self):
        if not self._items:
            return
        removed = self._items
        self._items = []
        self.items_removed.emit(removed)

    def reset(self, count: int):
        """전부 비우고 id 0..count-1 의 새 채널로 채운다."""
        self.clear()
        added = [ServoChannel(i) for i in range(count)]
        self._items = added
        if added:
            self.items_added.emit(list(added))

    def __len__(self) -> int:
        return len(self._items)

    def __getitem__(self, index: int) -> ServoChannel:
        return self._items[index]

    def __iter__(self) -> Iterator[ServoChannel]:
        return iter(list(self._items))


class AppModel(QObject):
    property_changed = Signal(str)

    connected_port = _observable("connected_port", "연결 대상 (포트명 / 'Mock' / 'Simulator' / None)")
    connected = _observable("connected")
    pid_enabled = _observable("pid_enabled")
    poll_pid_data = _observable("poll_pid_data")

    delta_time = _observable("delta_time")
    min_dt = _observable("min_dt")
    max_dt = _observable("max_dt")

    def __init__(self, parent=None):
        super().__init__(parent)
        self._connected_port: Optional[str] = None
        self._connected = False
        self._pid_enabled = False
        self._poll_pid_data = True

        self._delta_time = 0.0
        self._min_dt = 0.0
        self._max_dt = 0.0

        self.servos = ServoCollection(self)
        self.global_vars: Dict[GlobalVar, GlobalVariable] = {
            var: GlobalVariable(var, parent=self)
            for var in GlobalVar
            if var != GlobalVar.ANALOG_INPUT_RANGE
        }
