"""
Constants
Centralised storage for run statuses, step kinds, runners and metric names.
"""
# Run lifecycle
RUN_PENDING = "pending"
RUN_RUNNING = "running"
RUN_SUCCEEDED = "succeeded"
RUN_FAILED = "failed"
RUN_TIMED_OUT = "timed_out"

TERMINAL_STATUSES = frozenset({RUN_SUCCEEDED, RUN_FAILED, RUN_TIMED_OUT})

# Status values exposed to code hosts
STATUS_PENDING = "pending"
STATUS_SUCCESS = "success"
STATUS_FAILURE = "failure"

STEP_KINDS = ["build", "test", "analysis", "publish", "script"]
RUNNERS = ["gradle", "maven", "command", "script"]

TRIGGER_VCS = "vcs"
TRIGGER_UPSTREAM = "upstream"
TRIGGER_SCHEDULE = "schedule"
TRIGGER_KINDS = [TRIGGER_VCS, TRIGGER_UPSTREAM, TRIGGER_SCHEDULE]

# Failure-condition metrics
METRIC_ARTIFACT_SIZE = "artifact_size"
METRIC_BUILD_DURATION = "build_duration"
METRIC_FAILED_STEP_COUNT = "failed_step_count"
METRIC_ARTIFACT_COUNT = "artifact_count"
METRICS = [METRIC_ARTIFACT_SIZE, METRIC_BUILD_DURATION, METRIC_FAILED_STEP_COUNT, METRIC_ARTIFACT_COUNT]

COMPARISONS = ["MORE", "LESS", "DIFF"]
COMPARE_TO = ["value", "last_successful"]
METRIC_UNITS = ["default", "percent"]
