"""
Subprocess-based worksheet sink.

Why this module exists:
- 업로드 프로그램(외부 바이너리) 1회 호출의 수명 주기를 한곳에서 관리한다.
- 프로그램이 네트워크 정체로 멈추거나(rate limit 등) 일시 오류로 종료될 수 있으므로
  단계적 시그널(SIGINT -> SIGKILL)과 제한된 재시도로 자원 누수 없이 흡수한다.

Per attempt:
1) Popen(program, spreadsheet_id, worksheet, auth_ref)
2) writer: payload를 stdin에 쓰고 닫는다 (실패는 무시, exit code만 본다)
3) drainer: stderr를 버퍼로 읽는다 (실패 시 진단 메시지로 사용)
4) waiter: 호출 스레드에서 escalation 상태 루프로 종료를 기다린다

프로그램은 새 세션(프로세스 그룹)으로 띄우고 시그널은 그룹 전체에 보낸다.
wrapper 스크립트가 띄운 자식도 함께 종료되어 pipe가 닫힌다.
"""

from __future__ import annotations

import os
import signal
import subprocess
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from enum import Enum
from typing import Callable

from utils.delivery_contracts import DeliveryOutcome, DeliveryTarget, Payload
from utils.logger import get_logger

logger = get_logger(__name__)

DEFAULT_INTERRUPT_AFTER_SECONDS = 120.0
DEFAULT_KILL_AFTER_SECONDS = 180.0
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_DRAIN_TIMEOUT_SECONDS = 5.0


class WaitStage(str, Enum):
    """
    종료 대기 루프 상태.
    """

    AWAITING_EXIT = "awaiting_exit"
    INTERRUPTED = "interrupted"
    KILLED = "killed"


def _write_and_close(stream, content: bytes, worksheet: str) -> None:
    try:
        stream.write(content)
    except OSError as e:
        # 프로그램이 stdin을 읽기 전에 죽으면 BrokenPipe가 난다. 결과는 exit code로 판단.
        logger.debug("[Sheet] %s stdin write failed: %s", worksheet, e)
    finally:
        try:
            stream.close()
        except OSError as e:
            logger.debug("[Sheet] %s stdin close failed: %s", worksheet, e)


def _drain(stream) -> bytes:
    try:
        return stream.read()
    finally:
        stream.close()


class SheetSink:
    """
    worksheet 1장 = 외부 프로그램 1회 성공 실행.

    `popen`, `clock`, `killpg`는 테스트에서 fake process를 주입하기 위한 seam이다.
    """

    def __init__(
        self,
        *,
        interrupt_after: float = DEFAULT_INTERRUPT_AFTER_SECONDS,
        kill_after: float = DEFAULT_KILL_AFTER_SECONDS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        drain_timeout: float = DEFAULT_DRAIN_TIMEOUT_SECONDS,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
        clock: Callable[[], float] = time.monotonic,
        killpg: Callable[[int, int], None] = os.killpg,
        logger=None,
    ):
        if max_attempts <= 0:
            raise ValueError("max_attempts must be positive.")
        if interrupt_after <= 0 or kill_after <= 0:
            raise ValueError("escalation timeouts must be positive.")
        self.interrupt_after = interrupt_after
        self.kill_after = kill_after
        self.max_attempts = max_attempts
        self.drain_timeout = drain_timeout
        self._popen = popen
        self._clock = clock
        self._killpg = killpg
        self._logger = logger or get_logger(__name__)

    def deliver(self, payload: Payload, target: DeliveryTarget) -> DeliveryOutcome:
        """
        payload를 target 스프레드시트의 worksheet로 전송한다.

        실패해도 예외를 던지지 않고 DeliveryOutcome(succeeded=False)를 반환한다.
        """
        last_error = "no attempt made"
        for attempt in range(1, self.max_attempts + 1):
            ok, error = self._attempt(payload, target)
            if ok:
                if attempt > 1:
                    self._logger.info(
                        "[Sheet] %s delivered on attempt %d/%d",
                        payload.worksheet,
                        attempt,
                        self.max_attempts,
                    )
                return DeliveryOutcome(succeeded=True, attempts=attempt)

            last_error = error
            self._logger.warning(
                "[Sheet] %s attempt %d/%d failed: %s",
                payload.worksheet,
                attempt,
                self.max_attempts,
                error,
            )

        return DeliveryOutcome(
            succeeded=False,
            diagnostic=last_error,
            attempts=self.max_attempts,
        )

    def _attempt(
        self, payload: Payload, target: DeliveryTarget
    ) -> tuple[bool, str]:
        command = target.command_for(payload.worksheet)
        try:
            process = self._popen(
                command,
                stdin=subprocess.PIPE,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                start_new_session=True,
            )
        except (OSError, ValueError) as e:
            # 실행 파일 없음/권한 없음/pipe 생성 실패 모두 한 번의 실패 시도로 센다.
            return False, f"launch failed: {e}"

        launched_at = self._clock()
        io_pool = ThreadPoolExecutor(
            max_workers=2, thread_name_prefix=f"sheet-{payload.worksheet}"
        )
        try:
            io_pool.submit(
                _write_and_close, process.stdin, payload.content, payload.worksheet
            )
            stderr_future = io_pool.submit(_drain, process.stderr)
            returncode = self._wait_with_escalation(
                process, launched_at, payload.worksheet
            )
            try:
                stderr_bytes = stderr_future.result(timeout=self.drain_timeout)
            except FutureTimeoutError:
                # 그룹 밖으로 빠져나간 자손이 stderr를 쥐고 있다. 기다리지 않는다.
                self._logger.warning(
                    "[Sheet] %s stderr still open %.1fs after exit, not waiting",
                    payload.worksheet,
                    self.drain_timeout,
                )
                stderr_bytes = b"(stderr unavailable)"
        finally:
            io_pool.shutdown(wait=False)

        if returncode == 0:
            return True, ""

        stderr_text = stderr_bytes.decode("utf-8", errors="replace").strip()
        return False, f"exit status {returncode}: {stderr_text}"

    def _wait_with_escalation(
        self, process, launched_at: float, worksheet: str
    ) -> int:
        """
        두 타이머(interrupt/kill)는 launch 시각 기준으로 함께 걸린다.

        AWAITING_EXIT --interrupt 시각--> INTERRUPTED --kill 시각--> KILLED
        어느 상태에서든 프로세스가 끝나면 exit code를 반환한다.
        """
        interrupt_at = launched_at + self.interrupt_after
        kill_at = launched_at + self.kill_after
        stage = WaitStage.AWAITING_EXIT

        while True:
            if stage is WaitStage.AWAITING_EXIT:
                deadline: float | None = min(interrupt_at, kill_at)
            elif stage is WaitStage.INTERRUPTED:
                deadline = kill_at
            else:
                deadline = None

            timeout = None if deadline is None else max(0.0, deadline - self._clock())
            try:
                return process.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                pass

            if stage is WaitStage.AWAITING_EXIT and self._clock() < kill_at:
                self._logger.warning(
                    "[Sheet] %s still running after %.0fs, sending SIGINT",
                    worksheet,
                    self.interrupt_after,
                )
                self._send(process, signal.SIGINT)
                stage = WaitStage.INTERRUPTED
            else:
                self._logger.error(
                    "[Sheet] %s still running after %.0fs, sending SIGKILL",
                    worksheet,
                    self.kill_after,
                )
                self._send(process, signal.SIGKILL)
                stage = WaitStage.KILLED

    def _send(self, process, signum: int) -> None:
        try:
            self._killpg(process.pid, signum)
        except ProcessLookupError:
            # 이미 종료된 그룹. 다음 wait()가 exit code를 돌려준다.
            pass
