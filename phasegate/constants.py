"""Default values shared across phasegate modules."""

DEFAULT_QUALITY_THRESHOLD = 95.0
DEFAULT_MAX_ITERATIONS = 3
DEFAULT_TRANSIENT_RETRIES = 2
DEFAULT_STEP_DEADLINE_SECONDS = 300.0
DEFAULT_SCORER_TIMEOUT_SECONDS = 60.0

# Criterion name reported when the scoring function itself failed.
EVALUATION_ERROR_CRITERION = "EvaluationError"

# Producing step id of artifacts built from a run's initial input.
INPUT_STEP_ID = "input"

DEFAULT_DEFICIENCY_TEMPLATE = (
    "{criterion} scored {score:g}, below its threshold of {threshold:g} (gap {gap:g})"
)
