# -*- coding: utf-8 -*-
"""
protocol.py — 아두이노 서보 PID 펌웨어 통신 규약

송신(PC → 아두이노): 길이 접두 바이너리 프레임
    [길이 = payload + 2][명령][payload ...]
수신(아두이노 → PC): 개행으로 끝나는 ASCII 텍스트 한 줄
    DT/NS/SP/SD/GV 데이터, ERR:/LOG: 알림, RST ACK/OK 응답

parse_line() 은 절대 예외를 던지지 않는다. 숫자 파싱 실패는 MalformedLine,
채널 번호 범위 초과는 InvalidIndex 로 돌려주고 호출 측이 로그 후 버린다.
"""

from __future__ import annotations
import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Dict, Optional, Union

MAX_FRAME_LEN = 0xFF
MAX_PAYLOAD_LEN = MAX_FRAME_LEN - 2

RESET_LINE = "RST"


class Command(IntEnum):
    NO_OP = 0
    SET_SERVO_PARAM_FLOAT = 1
    ENABLE_REGULATOR = 2
    GET_NUM_SERVOS = 3
    GET_SERVO_PARAMS = 4
    GET_SERVO_DATA = 5
    SET_GLOBAL_VAR = 6
    GET_GLOBAL_VARS = 7
    LOAD_EEPROM = 8
    SAVE_EEPROM = 9
    RESET_TO_DEFAULT = 10
    CALIBRATE_ANALOG_INPUT = 11


class ServoParam(IntEnum):
    NONE = 0
    P = 1
    I = 2
    D = 3
    D_LAMBDA = 4
    SET_POINT = 5
    INPUT_MIN = 6
    INPUT_MAX = 7


class GlobalVar(IntEnum):
    NUM_SERVOS = 0
    PID_ENABLED = 1
    PID_MAX_INTEGRATOR_STORE = 2
    ANALOG_INPUT_RANGE = 3   # 펌웨어에서 사용 안 함
    SERVO_MIN_ANGLE = 4
    SERVO_MAX_ANGLE = 5
    DEADBAND_MAX_DEVIATION = 6


# 펌웨어 쪽에서 int 로 해석하는 전역 변수 (나머지는 float)
INT_GLOBAL_VARS = frozenset({GlobalVar.NUM_SERVOS, GlobalVar.PID_ENABLED})

# GV 응답 토큰 순서
GV_ORDER = (
    GlobalVar.NUM_SERVOS,
    GlobalVar.PID_ENABLED,
    GlobalVar.PID_MAX_INTEGRATOR_STORE,
    GlobalVar.SERVO_MIN_ANGLE,
    GlobalVar.SERVO_MAX_ANGLE,
    GlobalVar.DEADBAND_MAX_DEVIATION,
)


class FrameError(ValueError):
    """프레임 길이 바이트(1B) 범위를 넘는 payload."""


# =========================
#  송신 프레임
# =========================
@dataclass
class Frame:
    command: int
    payload: bytes

    def __repr__(self) -> str:
        try:
            name = Command(self.command).name
        except ValueError:
            name = f"0x{self.command:02X}"
        return f"Frame({name}, payload={self.payload.hex(' ') if self.payload else '(empty)'})"


def build_frame(command: int, payload: bytes = b"") -> bytes:
    payload = bytes(payload)
    length = len(payload) + 2
    if length > MAX_FRAME_LEN:
        raise FrameError(f"payload {len(payload)}B > {MAX_PAYLOAD_LEN}B")
    return bytes([length, int(command) & 0xFF]) + payload


def parse_frame(data: bytes) -> Optional[Frame]:
    """build_frame 의 역변환. 길이 바이트가 실제 길이와 다르면 None."""
    if len(data) < 2:
        return None
    length = data[0]
    if length < 2 or length != len(data):
        return None
    return Frame(command=data[1], payload=bytes(data[2:length]))


def servo_param_payload(servo_id: int, param: ServoParam, value: float) -> bytes:
    return struct.pack("<BBf", servo_id, int(param), value)


def global_var_payload(variable: GlobalVar, value: float) -> bytes:
    if variable in INT_GLOBAL_VARS:
        return struct.pack("<Bi", int(variable), int(value))
    return struct.pack("<Bf", int(variable), value)


# =========================
#  수신 메시지
# =========================
@dataclass(frozen=True)
class DeltaTime:
    dt: float
    min_dt: float
    max_dt: float


@dataclass(frozen=True)
class NumServos:
    count: int


@dataclass(frozen=True)
class ServoParams:
    servo_id: int
    p: float
    i: float
    d: float
    d_lambda: float
    set_point: float


@dataclass(frozen=True)
class ServoData:
    servo_id: int
    input: float
    output: float
    integrator: float
    d_filtered: float


@dataclass(frozen=True)
class GlobalVars:
    values: Dict[GlobalVar, float]


@dataclass(frozen=True)
class ErrorNotice:
    text: str


@dataclass(frozen=True)
class Acknowledgement:
    text: str


@dataclass(frozen=True)
class LogNotice:
    text: str


@dataclass(frozen=True)
class Unknown:
    line: str


@dataclass(frozen=True)
class MalformedLine:
    line: str
    field: str
    reason: str


@dataclass(frozen=True)
class InvalidIndex:
    line: str
    index: int


Message = Union[
    DeltaTime, NumServos, ServoParams, ServoData, GlobalVars,
    ErrorNotice, Acknowledgement, LogNotice, Unknown, MalformedLine, InvalidIndex,
]


class _BadField(Exception):
    def __init__(self, field: str, reason: str):
        super().__init__(reason)
        self.field = field
        self.reason = reason


def _tokens(line: str, names: tuple) -> list:
    parts = line.split(" ")[1:]
    if len(parts) != len(names):
        raise _BadField("*", f"토큰 {len(parts)}개 (필요 {len(names)}개)")
    return parts


def _to_int(token: str, field: str) -> int:
    if "_" in token:
        raise _BadField(field, f"정수 아님: {token!r}")
    try:
        return int(token)
    except ValueError:
        raise _BadField(field, f"정수 아님: {token!r}") from None


def _to_float(token: str, field: str) -> float:
    if "_" in token:
        raise _BadField(field, f"실수 아님: {token!r}")
    try:
        return float(token)
    except ValueError:
        raise _BadField(field, f"실수 아님: {token!r}") from None


def _floats(parts: list, names: tuple) -> list:
    return [_to_float(tok, name) for tok, name in zip(parts, names)]


_SP_FIELDS = ("id", "P", "I", "D", "DLambda", "SetPoint")
_SD_FIELDS = ("id", "Input", "Output", "Integrator", "DFiltered")
_GV_FIELDS = tuple(v.name for v in GV_ORDER)
_DT_FIELDS = ("dt", "minDt", "maxDt")


def parse_line(line: str, num_servos: Optional[int] = None) -> Message:
    """수신 한 줄 → 메시지. num_servos 가 주어지면 SP/SD 채널 번호 범위도 검사."""
    try:
        if line.startswith("DT "):
            return DeltaTime(*_floats(_tokens(line, _DT_FIELDS), _DT_FIELDS))

        if line.startswith("NS "):
            parts = _tokens(line, ("count",))
            return NumServos(_to_int(parts[0], "count"))

        if line.startswith("SP ") or line.startswith("SD "):
            names = _SP_FIELDS if line.startswith("SP ") else _SD_FIELDS
            parts = _tokens(line, names)
            servo_id = _to_int(parts[0], "id")
            values = _floats(parts[1:], names[1:])
            if servo_id < 0 or (num_servos is not None and servo_id >= num_servos):
                return InvalidIndex(line, servo_id)
            if names is _SP_FIELDS:
                return ServoParams(servo_id, *values)
            return ServoData(servo_id, *values)

        if line.startswith("GV "):
            parts = _tokens(line, _GV_FIELDS)
            values: Dict[GlobalVar, float] = {}
            for var, tok in zip(GV_ORDER, parts):
                if var in INT_GLOBAL_VARS:
                    values[var] = _to_int(tok, var.name)
                else:
                    values[var] = _to_float(tok, var.name)
            return GlobalVars(values)
    except _BadField as e:
        return MalformedLine(line, e.field, e.reason)

    if line.startswith("ERR: "):
        return ErrorNotice(line[5:])
    if line in ("RST ACK", "OK"):
        return Acknowledgement(line)
    if line.startswith("LOG: "):
        return LogNotice(line[5:])
    return Unknown(line)
