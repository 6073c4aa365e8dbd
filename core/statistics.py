"""
Initialization Statistics - Attempt / timing / error history per platform

Feeds the orchestrator health report: success rate, consecutive failures,
performance buckets and a recommended action.
"""
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

LOGGER = logging.getLogger(__name__)

TIMING_HISTORY_LIMIT = 100
ERROR_HISTORY_LIMIT = 50

# metrics key → performance bucket
METRIC_BUCKETS = {
    "connectionTime": "connectionEstablishmentTime",
    "serviceInitTime": "serviceInitializationTime",
    "configValidationTime": "configurationValidationTime",
    "dependencyTime": "dependencyResolutionTime",
}


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class AttemptTiming:
    """One finished initialization attempt (ms)"""
    attempt_id: str
    duration: int
    start_time: int
    end_time: int
    success: bool
    metrics: Dict = field(default_factory=dict)
    error: Optional[Dict] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "attemptId": self.attempt_id,
            "duration": self.duration,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "success": self.success,
            "metrics": dict(self.metrics),
        }
        if self.error is not None:
            data["error"] = dict(self.error)
        return data


class InitializationStatistics:
    """Track initialization attempts for one platform"""

    def __init__(self, platform: str):
        self.platform = platform
        self.reset(log=False)

    def reset(self, log: bool = True):
        self.total_attempts = 0
        self.successful_attempts = 0
        self.failed_attempts = 0
        self.prevented_attempts = 0

        self.timing_history: List[AttemptTiming] = []
        self.total_initialization_time = 0
        self.average_initialization_time = 0.0
        self.fastest_initialization: Optional[Dict[str, Any]] = None
        self.slowest_initialization: Optional[Dict[str, Any]] = None

        self.error_history: List[Dict[str, Any]] = []
        self.error_types: Dict[str, int] = {}
        self.consecutive_failures = 0
        self.last_success_time: Optional[int] = None

        self.performance_metrics: Dict[str, List[float]] = {bucket: [] for bucket in METRIC_BUCKETS.values()}

        self.first_initialization_time: Optional[int] = None
        self.last_initialization_time: Optional[int] = None
        self.is_currently_initializing = False
        self.current_attempt_start: Optional[int] = None

        if log:
            LOGGER.debug(f"[{self.platform}] Initialization statistics reset")

    # ========================================================================
    # Recording
    # ========================================================================

    def start_attempt(self, metadata: Optional[Dict[str, Any]] = None) -> str:
        """
        Start timing a new attempt.

        Returns:
            str: attempt id "<platform>-<ms>-<uuid4>"
        """
        start = _now_ms()
        attempt_id = f"{self.platform}-{start}-{uuid.uuid4()}"

        self.total_attempts += 1
        self.is_currently_initializing = True
        self.current_attempt_start = start
        if self.first_initialization_time is None:
            self.first_initialization_time = start

        LOGGER.debug(f"[{self.platform}] Starting initialization attempt {self.total_attempts} (ID: {attempt_id}) {metadata or ''}")
        return attempt_id

    def record_success(self, attempt_id: str, metrics: Optional[Dict[str, Any]] = None):
        if not self.is_currently_initializing:
            LOGGER.warning(f"⚠️ [{self.platform}] record_success called but no active initialization attempt")
            return

        metrics = metrics or {}
        end = _now_ms()
        duration = end - self.current_attempt_start

        self.successful_attempts += 1
        self.consecutive_failures = 0
        self.last_success_time = end
        self.last_initialization_time = end
        self.is_currently_initializing = False

        self.total_initialization_time += duration
        self.average_initialization_time = self.total_initialization_time / self.successful_attempts

        if self.fastest_initialization is None or duration < self.fastest_initialization["duration"]:
            self.fastest_initialization = {"duration": duration, "timestamp": end, "attemptId": attempt_id}
        if self.slowest_initialization is None or duration > self.slowest_initialization["duration"]:
            self.slowest_initialization = {"duration": duration, "timestamp": end, "attemptId": attempt_id}

        self._push_timing(AttemptTiming(attempt_id, duration, self.current_attempt_start, end, True, metrics))

        for key, bucket in METRIC_BUCKETS.items():
            if metrics.get(key):
                self.performance_metrics[bucket].append(metrics[key])

        LOGGER.info(f"✅ [{self.platform}] Initialization successful in {duration}ms (attempt {self.total_attempts})")

    def record_failure(self, attempt_id: str, error: Any, context: Optional[Dict[str, Any]] = None):
        if not self.is_currently_initializing:
            LOGGER.warning(f"⚠️ [{self.platform}] record_failure called but no active initialization attempt")
            return

        end = _now_ms()
        duration = end - self.current_attempt_start

        self.failed_attempts += 1
        self.consecutive_failures += 1
        self.last_initialization_time = end
        self.is_currently_initializing = False

        error_type = type(error).__name__ if isinstance(error, BaseException) else "UnknownError"
        self.error_types[error_type] = self.error_types.get(error_type, 0) + 1

        error_data = {
            "attemptId": attempt_id,
            "duration": duration,
            "timestamp": end,
            "errorType": error_type,
            "errorMessage": str(error) if error else "Unknown error",
            "context": dict(context or {}),
            "consecutiveFailure": self.consecutive_failures,
        }
        self.error_history.append(error_data)
        del self.error_history[:-ERROR_HISTORY_LIMIT]

        self._push_timing(AttemptTiming(attempt_id, duration, self.current_attempt_start, end, False, error=error_data))

        LOGGER.error(
            f"❌ [{self.platform}] Initialization failed after {duration}ms "
            f"(attempt {self.total_attempts}, consecutive failures: {self.consecutive_failures}): {error}"
        )

    def record_prevented_attempt(self, reason: str):
        self.prevented_attempts += 1
        LOGGER.debug(f"[{self.platform}] Initialization attempt prevented: {reason} (total prevented: {self.prevented_attempts})")

    def _push_timing(self, timing: AttemptTiming):
        self.timing_history.append(timing)
        del self.timing_history[:-TIMING_HISTORY_LIMIT]

    # ========================================================================
    # Reporting
    # ========================================================================

    def get_statistics(self) -> Dict[str, Any]:
        now = _now_ms()
        success_rate = (self.successful_attempts / self.total_attempts) * 100 if self.total_attempts > 0 else 0

        return {
            "totalAttempts": self.total_attempts,
            "successfulAttempts": self.successful_attempts,
            "failedAttempts": self.failed_attempts,
            "preventedAttempts": self.prevented_attempts,
            "successRate": success_rate,
            "consecutiveFailures": self.consecutive_failures,
            "averageInitializationTime": self.average_initialization_time,
            "totalInitializationTime": self.total_initialization_time,
            "fastestInitialization": self.fastest_initialization,
            "slowestInitialization": self.slowest_initialization,
            "firstInitializationTime": self.first_initialization_time,
            "lastInitializationTime": self.last_initialization_time,
            "lastSuccessTime": self.last_success_time,
            "timeSinceLastSuccess": now - self.last_success_time if self.last_success_time else None,
            "errorTypes": dict(self.error_types),
            "recentErrors": [dict(e) for e in self.error_history[-10:]],
            "performanceMetrics": self._performance_averages(),
            "isHealthy": success_rate >= 80 and self.consecutive_failures < 3,
            "platform": self.platform,
        }

    def get_timing_history(self, limit: int = 20) -> List[Dict[str, Any]]:
        return [t.to_dict() for t in self.timing_history[-limit:]] if limit > 0 else []

    def get_error_analysis(self) -> Dict[str, Any]:
        recent = self.error_history[-20:]
        frequency: Dict[str, int] = {}
        for error in recent:
            frequency[error["errorType"]] = frequency.get(error["errorType"], 0) + 1

        most_common = None
        max_count = 0
        for error_type, count in frequency.items():
            if count > max_count:
                most_common, max_count = error_type, count

        return {
            "totalErrors": len(self.error_history),
            "recentErrors": len(recent),
            "errorFrequency": frequency,
            "mostCommonError": most_common,
            "consecutiveFailures": self.consecutive_failures,
            "errorTypes": list(self.error_types),
            "recommendedAction": self._recommended_action(),
        }

    def _performance_averages(self) -> Dict[str, Dict[str, Any]]:
        averages = {}
        for bucket, values in self.performance_metrics.items():
            if values:
                averages[bucket] = {
                    "average": sum(values) / len(values),
                    "count": len(values),
                    "min": min(values),
                    "max": max(values),
                }
            else:
                averages[bucket] = {"average": 0, "count": 0, "min": None, "max": None}
        return averages

    def _recommended_action(self) -> str:
        if self.consecutive_failures >= 5:
            return "CRITICAL: Consider restarting platform or checking configuration"
        if self.consecutive_failures >= 3:
            return "WARNING: Investigate recurring initialization failures"
        if self.average_initialization_time > 30000:
            return "OPTIMIZATION: Initialization time is slow, consider performance improvements"
        if self.successful_attempts == 0 and self.total_attempts > 0:
            return "ERROR: No successful initializations, check platform configuration"
        return "NORMAL: Platform initialization is functioning normally"
