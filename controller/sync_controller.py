# -*- coding: utf-8 -*-
"""
sync_controller.py — 아두이노 서보 PID 펌웨어 ↔ AppModel 양방향 동기화

핵심 설계:
  - 수신 컨텍스트(Transport.ready_read, DirectConnection)에서는 줄 조립만 한다.
    완성된 줄은 QueuedConnection 으로 컨트롤러 스레드(모델 스레드)에 넘겨 순서대로 적용.
  - 응답 대기/상관 id 없음. "마지막 채널의 SP 가 왔다" 같은 내용으로 다음 요청을 낸다.
  - 수신값을 모델에 반영하는 동안(inbound_update 범위)에는 모델 변경 알림을
    다시 아두이노로 보내지 않는다 (에코 루프 방지).
  - 연결 실패/포트 오류 시 자동 재연결하지 않는다.

상태:  DISCONNECTED → OPENING → AWAITING_RESET → DISCOVERING → SYNCED
  - NS 수신: 채널 재구성 + GetServoParams  → DISCOVERING
  - 마지막 채널 SP: GetServoData(0x80 전체 버스트)
  - 버스트의 마지막 채널 SD 처리 완료      → SYNCED
  - ERR: 수신은 상태 변화 없이 RST 재전송
"""

from __future__ import annotations
from contextlib import contextmanager
from contextvars import ContextVar
from enum import Enum
from functools import partial
from typing import Callable, Dict, FrozenSet, List, Optional, Tuple

from PyQt6.QtCore import QObject, QTimer, QElapsedTimer, Qt, pyqtSignal as Signal, pyqtSlot as Slot

from controller.app_model import AppModel, GlobalVariable, ServoChannel
from device.serial_transport import QtSerialTransport
from device.simulator import EmulationEngine, NativeArduinoEngine, SimulatorTransport
from device.transport import MockTransport, Transport
from lib.config import (
    ARDUINO_POLLING_INTERVAL_MS, MAX_SERVOS, FULL_BURST_REQUEST,
    MOCK_PORT_NAME, SIMULATOR_PORT_NAME, DEBUG_PRINT, RX_MAX, LINE_MAX,
)
from lib.line_framer import LineFramer
from lib.protocol import (
    Command, ServoParam, GlobalVar, RESET_LINE,
    build_frame, servo_param_payload, global_var_payload, parse_line,
    DeltaTime, NumServos, ServoParams, ServoData, GlobalVars,
    ErrorNotice, Acknowledgement, LogNotice, Unknown, MalformedLine, InvalidIndex,
)

SECTION = "Arduino"

# 수신값 반영 중인 컨트롤러 id 집합 (재진입/다중 스레드에서도 컨텍스트별로 분리)
_INBOUND_UPDATE: ContextVar[FrozenSet[int]] = ContextVar("inbound_update", default=frozenset())

# ServoChannel 속성명 → 펌웨어 파라미터 id
SERVO_PARAM_BY_NAME = {
    "p": ServoParam.P,
    "i": ServoParam.I,
    "d": ServoParam.D,
    "d_lambda": ServoParam.D_LAMBDA,
    "set_point": ServoParam.SET_POINT,
    "input_min": ServoParam.INPUT_MIN,
    "input_max": ServoParam.INPUT_MAX,
}


class LinkState(str, Enum):
    DISCONNECTED = "DISCONNECTED"
    OPENING = "OPENING"
    AWAITING_RESET = "AWAITING_RESET"
    DISCOVERING = "DISCOVERING"
    SYNCED = "SYNCED"


class SyncController(QObject):
    status_message = Signal(str, str)     # (섹션, 메시지)
    state_changed = Signal(object)        # LinkState
    _lines_pending = Signal()             # 수신 컨텍스트 → 모델 스레드

    def __init__(
        self,
        model: Optional[AppModel] = None,
        poll_interval_ms: int = ARDUINO_POLLING_INTERVAL_MS,
        engine_factory: Optional[Callable[[], EmulationEngine]] = None,
        transport_factory: Optional[Callable[[str], Transport]] = None,
        parent=None,
    ):
        super().__init__(parent)
        self.debug_print = DEBUG_PRINT

        self._model: Optional[AppModel] = None
        self._transport: Optional[Transport] = None
        self._framer = LineFramer()
        self._state = LinkState.DISCONNECTED

        self._poll_interval_ms = poll_interval_ms
        self._engine_factory = engine_factory or NativeArduinoEngine
        self._transport_factory = transport_factory or self._create_transport

        # ❗ 지연 생성: 타이머는 컨트롤러 스레드에서 만든다
        self.polling_timer: Optional[QTimer] = None

        self._clock = QElapsedTimer()
        self._pinned_time: Optional[float] = None
        self._burst_requested = False

        # 구독 목록: 소유 객체 → [(signal, slot)]
        self._subs: Dict[QObject, List[Tuple[object, Callable]]] = {}

        self._lines_pending.connect(self._drain_lines, Qt.ConnectionType.QueuedConnection)

        self._handlers = {
            DeltaTime: self._on_delta_time,
            NumServos: self._on_num_servos,
            ServoParams: self._on_servo_params,
            ServoData: self._on_servo_data,
            GlobalVars: self._on_global_vars,
            ErrorNotice: self._on_error_notice,
            Acknowledgement: self._on_acknowledgement,
            LogNotice: self._on_log_notice,
            Unknown: self._on_unknown,
            MalformedLine: self._on_malformed,
            InvalidIndex: self._on_invalid_index,
        }

        if model is not None:
            self.set_model(model)

    def _ensure_timers_created(self):
        if self.polling_timer is None:
            self.polling_timer = QTimer(self)
            self.polling_timer.setInterval(self._poll_interval_ms)
            self.polling_timer.timeout.connect(self.poll)

    # ---------- 로그 ----------
    def _dprint(self, *args):
        if self.debug_print:
            print(*args, flush=True)

    def _info(self, msg: str):
        self.status_message.emit(SECTION, msg); self._dprint(f"[ARD] {msg}")

    def _warn(self, msg: str):
        self.status_message.emit(f"{SECTION}(경고)", msg); self._dprint(f"[WARN] {msg}")

    def _error(self, msg: str):
        self.status_message.emit(f"{SECTION}(오류)", msg); self._dprint(f"[ERR] {msg}")

    # =================================================
    # 상태 / 시간
    # =================================================
    @property
    def state(self) -> LinkState:
        return self._state

    def _set_state(self, state: LinkState):
        if state == self._state:
            return
        self._dprint(f"[STATE] {self._state.value} → {state.value}")
        self._state = state
        self.state_changed.emit(state)

    @property
    def model(self) -> Optional[AppModel]:
        return self._model

    @property
    def transport(self) -> Optional[Transport]:
        return self._transport

    @property
    def elapsed_time(self) -> float:
        """샘플 타임스탬프(초). 고정값이 있으면 그것, 없으면 RST 이후 경과 시간."""
        if self._pinned_time is not None:
            return self._pinned_time
        if not self._clock.isValid():
            return 0.0
        return self._clock.elapsed() / 1000.0

    def pin_elapsed_time(self, value: Optional[float]):
        """샘플 시각 고정 (None 이면 해제)."""
        self._pinned_time = value

    # =================================================
    # 에코 루프 방지
    # =================================================
    @contextmanager
    def inbound_update(self):
        """이 범위 안의 모델 변경은 아두이노로 다시 보내지 않는다."""
        token = _INBOUND_UPDATE.set(_INBOUND_UPDATE.get() | {id(self)})
        try:
            yield
        finally:
            _INBOUND_UPDATE.reset(token)

    @property
    def applying_inbound(self) -> bool:
        return id(self) in _INBOUND_UPDATE.get()

    # =================================================
    # 모델 구독
    # =================================================
    def _subscribe(self, owner: QObject, signal, slot: Callable):
        signal.connect(slot, Qt.ConnectionType.DirectConnection)
        self._subs.setdefault(owner, []).append((signal, slot))

    def _unsubscribe(self, owner: QObject):
        for signal, slot in self._subs.pop(owner, []):
            try:
                signal.disconnect(slot)
            except (TypeError, RuntimeError):
                pass

    def _subscribe_servo(self, servo: ServoChannel):
        self._subscribe(servo, servo.property_changed, partial(self._on_servo_changed, servo))

    def _subscribe_model(self, model: AppModel):
        self._subscribe(model, model.property_changed, self._on_model_changed)
        self._subscribe(model.servos, model.servos.items_added, self._on_servos_added)
        self._subscribe(model.servos, model.servos.items_removed, self._on_servos_removed)
        for servo in model.servos:
            self._subscribe_servo(servo)
        for gv in model.global_vars.values():
            self._subscribe(gv, gv.property_changed, partial(self._on_global_var_changed, gv))

    def _unsubscribe_model(self, model: AppModel):
        self._unsubscribe(model)
        self._unsubscribe(model.servos)
        for servo in model.servos:
            self._unsubscribe(servo)
        for gv in model.global_vars.values():
            self._unsubscribe(gv)
        # 컬렉션에서 이미 빠진 채널 잔여분
        for owner in list(self._subs):
            if isinstance(owner, ServoChannel):
                self._unsubscribe(owner)

    def _resubscribe(self):
        if self._model is None:
            return
        self._unsubscribe_model(self._model)
        self._subscribe_model(self._model)

    @property
    def subscription_count(self) -> int:
        return sum(len(v) for v in self._subs.values())

    @Slot(object)
    def set_model(self, model: Optional[AppModel]):
        """관찰 대상 모델 교체: 이전 모델 구독 해제 → 새 모델 구독 → 상태 반영 + 재연결."""
        self._ensure_timers_created()
        if self._model is not None:
            self._unsubscribe_model(self._model)
            self._close_transport()

        self._model = model

        if model is not None:
            self._subscribe_model(model)
        self.connect_port()
        self._send_enable_regulator()

    # ---------- 모델 → 아두이노 ----------
    def _on_model_changed(self, name: str):
        if name == "pid_enabled":
            self._send_enable_regulator()
        elif name == "connected_port":
            self._resubscribe()
            self.connect_port()
        elif name == "poll_pid_data":
            self._update_poll_timer()

    def _on_servos_added(self, servos: list):
        for servo in servos:
            self._subscribe_servo(servo)

    def _on_servos_removed(self, servos: list):
        for servo in servos:
            self._unsubscribe(servo)

    def _on_servo_changed(self, servo: ServoChannel, name: str):
        if self.applying_inbound:
            return
        param = SERVO_PARAM_BY_NAME.get(name)
        if param is None:
            return
        self.send_servo_param(servo.servo_id, param, getattr(servo, name))

    def _on_global_var_changed(self, gv: GlobalVariable, name: str):
        if self.applying_inbound:
            return
        self.send_global_var(gv.variable, gv.value)

    def _send_enable_regulator(self):
        if self._model is None:
            return
        self.send_command(Command.ENABLE_REGULATOR, bytes([1 if self._model.pid_enabled else 0]))

    # =================================================
    # 연결 / 해제
    # =================================================
    def _create_transport(self, target: str) -> Transport:
        if target == MOCK_PORT_NAME:
            return MockTransport()
        if target == SIMULATOR_PORT_NAME:
            return SimulatorTransport(self._engine_factory())
        return QtSerialTransport(target)

    @Slot()
    def connect_port(self) -> bool:
        """현재 모델의 connected_port 로 (재)연결. 실패해도 재시도하지 않는다."""
        self._ensure_timers_created()
        self._close_transport()

        model = self._model
        if model is None or model.connected_port is None:
            return False

        target = model.connected_port
        self._set_state(LinkState.OPENING)

        transport: Optional[Transport] = None
        try:
            transport = self._transport_factory(target)
            # 열기 중 나오는 상태 메시지(시뮬레이터 PWM/EEPROM 요약 등)도 받도록 먼저 연결
            transport.status_message.connect(self.status_message)
            ok = transport.open()
            reason = getattr(transport, "last_error", "") or "open() 실패"
        except Exception as e:
            ok = False
            reason = str(e)

        if not ok:
            if transport is not None:
                try:
                    transport.dispose()
                except Exception as e:
                    self._dprint(f"[WARN] dispose after failed open: {e}")
            self._error(f"{target} 포트 열기 실패: {reason}")
            model.connected = False
            self._set_state(LinkState.DISCONNECTED)
            return False

        self._transport = transport
        self._framer = LineFramer()
        self._burst_requested = False

        self._info(f"{target} 연결 성공, RST 전송")
        transport.write_line(RESET_LINE)
        transport.ready_read.connect(self._on_ready_read, Qt.ConnectionType.DirectConnection)
        transport.error_occurred.connect(self._on_transport_error)

        self._clock.start()
        self._pinned_time = None
        model.connected = True
        self._set_state(LinkState.AWAITING_RESET)
        self._update_poll_timer()

        self.retrieve_all_data()
        return True

    def _close_transport(self):
        transport = self._transport
        if transport is None:
            self._set_state(LinkState.DISCONNECTED)
            return

        self._transport = None
        for signal, slot in ((transport.ready_read, self._on_ready_read),
                             (transport.error_occurred, self._on_transport_error),
                             (transport.status_message, self.status_message)):
            try:
                signal.disconnect(slot)
            except (TypeError, RuntimeError):
                pass
        self._framer.clear()
        try:
            transport.close()
        finally:
            transport.dispose()
            if self._model is not None:
                self._model.connected = False
            self._update_poll_timer()
            self._set_state(LinkState.DISCONNECTED)
            self._info(f"{transport.name} 연결 종료")

    @Slot()
    def close(self):
        self._close_transport()

    @Slot()
    def cleanup(self):
        """안전 종료: 포트 닫기 + 모델 구독 해제 + 타이머 정지."""
        self.set_model(None)
        if self.polling_timer:
            self.polling_timer.stop()
            self.polling_timer.deleteLater()
            self.polling_timer = None

    def _on_transport_error(self, msg: str):
        self._error(msg)
        self._close_transport()

    # =================================================
    # 폴링
    # =================================================
    def _update_poll_timer(self):
        if self.polling_timer is None:
            return
        model = self._model
        should_poll = (model is not None and model.poll_pid_data
                       and self._transport is not None and self._transport.is_open())
        if should_poll and not self.polling_timer.isActive():
            self.polling_timer.start()
            self._dprint("[RUN] POLL START")
        elif not should_poll and self.polling_timer.isActive():
            self.polling_timer.stop()
            self._dprint("[RUN] POLL STOP")

    @Slot()
    def poll(self):
        model = self._model
        if model is None or not model.poll_pid_data:
            return
        if self._transport is None or not self._transport.is_open():
            return
        self.send_command(Command.GET_SERVO_DATA, bytes([len(model.servos)]))

    # =================================================
    # 송신
    # =================================================
    def send_command(self, cmd: Command, payload: bytes = b"") -> bool:
        frame = build_frame(cmd, payload)
        transport = self._transport
        if transport is None or not transport.is_open():
            return False
        if cmd != Command.GET_SERVO_DATA:
            self._dprint(f"[SEND] {len(frame)}: {frame.hex('-').upper()}")
        return transport.write(frame) > 0

    def send_reset(self) -> bool:
        transport = self._transport
        if transport is None:
            return False
        self._dprint(f"[SEND] {RESET_LINE}")
        return transport.write_line(RESET_LINE) > 0

    def send_servo_param(self, servo_id: int, param: ServoParam, value: float) -> bool:
        return self.send_command(Command.SET_SERVO_PARAM_FLOAT, servo_param_payload(servo_id, param, value))

    def send_global_var(self, variable: GlobalVar, value: float) -> bool:
        return self.send_command(Command.SET_GLOBAL_VAR, global_var_payload(variable, value))

    @Slot()
    def retrieve_all_data(self):
        self.send_command(Command.GET_NUM_SERVOS)
        self.send_command(Command.GET_GLOBAL_VARS)

    @Slot()
    def load_eeprom(self):
        self.send_command(Command.LOAD_EEPROM)

    @Slot()
    def save_eeprom(self):
        self.send_command(Command.SAVE_EEPROM)

    @Slot()
    def reset_to_default(self):
        self.send_command(Command.RESET_TO_DEFAULT)

    @Slot()
    def calibrate_analog_input(self):
        self.send_command(Command.CALIBRATE_ANALOG_INPUT)

    # =================================================
    # 수신
    # =================================================
    def _on_ready_read(self):
        # 수신 컨텍스트: 줄 조립만
        transport = self._transport
        if transport is None:
            return
        data = transport.read_all()
        if not data:
            self._dprint("[RECV] readyRead but no data")
            return
        framer = self._framer
        overflow, truncated = framer.overflow_count, framer.truncated_count
        found = framer.append(data)
        if framer.overflow_count != overflow:
            self._warn(f"수신 버퍼 과다(RX>{RX_MAX}); 최근 {RX_MAX}자만 보존.")
        if framer.truncated_count != truncated:
            self._warn(f"수신 줄이 너무 김(>{LINE_MAX}자); 잘라서 처리.")
        if found:
            self._lines_pending.emit()

    def _drain_lines(self):
        for line in self._framer.drain():
            self.handle_line(line)

    @Slot(str)
    def handle_line(self, line: str):
        """완성된 한 줄을 해석해 모델에 반영 (모델 스레드 전용)."""
        model = self._model
        if model is None:
            return
        msg = parse_line(line, len(model.servos))
        self._handlers[type(msg)](msg)

    def _on_delta_time(self, msg: DeltaTime):
        model = self._model
        with self.inbound_update():
            model.delta_time = msg.dt
            model.min_dt = msg.min_dt
            model.max_dt = msg.max_dt

    def _on_num_servos(self, msg: NumServos):
        if msg.count > MAX_SERVOS or msg.count < 0:
            self._error(f"서보 수 비정상: {msg.count} (최대 {MAX_SERVOS})")
            return

        with self.inbound_update():
            self._model.servos.reset(msg.count)
        self._burst_requested = False
        self._set_state(LinkState.DISCOVERING if msg.count else LinkState.SYNCED)
        self.send_command(Command.GET_SERVO_PARAMS)

    def _on_servo_params(self, msg: ServoParams):
        servos = self._model.servos
        servo = servos[msg.servo_id]
        with self.inbound_update():
            servo.p = msg.p
            servo.i = msg.i
            servo.d = msg.d
            servo.d_lambda = msg.d_lambda
            servo.set_point = msg.set_point

        if msg.servo_id == len(servos) - 1:
            self._burst_requested = True
            self.send_command(Command.GET_SERVO_DATA, bytes([FULL_BURST_REQUEST]))

    def _on_servo_data(self, msg: ServoData):
        servos = self._model.servos
        servo = servos[msg.servo_id]
        with self.inbound_update():
            servo.input = msg.input
            servo.output = msg.output
            servo.integrator = msg.integrator
            servo.d_filtered = msg.d_filtered
            servo.record_time_point(self.elapsed_time)

        if (self._state == LinkState.DISCOVERING and self._burst_requested
                and msg.servo_id == len(servos) - 1):
            self._burst_requested = False
            self._set_state(LinkState.SYNCED)
            self._info(f"서보 {len(servos)}개 동기화 완료")

    def _on_global_vars(self, msg: GlobalVars):
        global_vars = self._model.global_vars
        with self.inbound_update():
            for var, value in msg.values.items():
                if var in global_vars:
                    global_vars[var].value = value

    def _on_error_notice(self, msg: ErrorNotice):
        self._error(f"수신: ERR: {msg.text}")
        self.send_reset()

    def _on_acknowledgement(self, msg: Acknowledgement):
        self._dprint(f"[RECV] {msg.text}")

    def _on_log_notice(self, msg: LogNotice):
        self._info(f"아두이노 로그: '{msg.text}'")

    def _on_unknown(self, msg: Unknown):
        self._warn(f"알 수 없는 메시지: {msg.line!r}")

    def _on_malformed(self, msg: MalformedLine):
        self._error(f"잘못된 데이터: {msg.line!r} ({msg.field}: {msg.reason})")

    def _on_invalid_index(self, msg: InvalidIndex):
        self._error(f"잘못된 서보 번호 {msg.index}: {msg.line!r}")
