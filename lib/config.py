# lib/config.py
from pathlib import Path

# === 시리얼 포트 설정 ===
ARDUINO_BAUD = 115200
ARDUINO_NEWLINE = "\n"

# 연결 대상 이름 중 실제 포트가 아닌 특수값
MOCK_PORT_NAME = "Mock"            # 아무 데이터도 주지 않는 더미 포트
SIMULATOR_PORT_NAME = "Simulator"  # 네이티브 아두이노 에뮬레이터

# === 폴링 / 시뮬레이터 타이머 (ms) ===
ARDUINO_POLLING_INTERVAL_MS = 50   # GetServoData 주기
SIMULATOR_TICK_MS = 10             # 에뮬레이터 loop() 1회 호출 주기

# 에뮬레이터 공유 라이브러리 (ArduinoMock 빌드 결과물)
SIMULATOR_LIB_PATH = Path(__file__).resolve().parent.parent / "native" / "ArduinoMock.so"

# ======================================================================
# 프로토콜 제한값
# ======================================================================
MAX_SERVOS = 16                # NS 응답이 이보다 크면 무시
FULL_BURST_REQUEST = 0x80      # GetServoData 인자: 전 채널 즉시 전송 요청
TIME_SERIES_LENGTH_SEC = 10.0  # 그래프용 샘플 보존 구간 (초)

# 수신 버퍼 보호
RX_MAX = 16 * 1024
LINE_MAX = 512

DEBUG_PRINT = False
