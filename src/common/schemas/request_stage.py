from enum import Enum


class RequestStage(Enum):
    NEW = "NEW"
    GUARDED = "GUARDED"
    DECRYPTING = "DECRYPTING"
    INFERRING = "INFERRING"
    HASHING = "HASHING"
    PUBLISHING = "PUBLISHING"
    SUBMITTING = "SUBMITTING"
    FULFILLED = "FULFILLED"


# Stages in which a pipeline attempt owns the request
IN_FLIGHT_STAGES = frozenset(
    {
        RequestStage.GUARDED,
        RequestStage.DECRYPTING,
        RequestStage.INFERRING,
        RequestStage.HASHING,
        RequestStage.PUBLISHING,
        RequestStage.SUBMITTING,
    }
)
