# src/fulfillment/stage_tracker.py

from common.schemas.request_stage import RequestStage
from common.logging_utils import log_event
from fulfillment.store import FulfillmentStore


class RequestStageTracker:
    """
    Records and logs per-request stage transitions.
    Stages: NEW → GUARDED → DECRYPTING → INFERRING → HASHING → PUBLISHING → SUBMITTING → FULFILLED
    """

    def __init__(self, store: FulfillmentStore, node_id: str):
        self.store = store
        self.node_id = node_id

    def set_stage(self, request_id: int, new_stage: RequestStage):
        """
        Transition a guarded request to a new stage (Enum-based, not string-based)
        """
        self.store.set_stage(request_id, new_stage)
        log_event(
            "request_stage_change",
            node_id=self.node_id,
            request_id=request_id,
            extra={"stage": new_stage.value},
            level="debug",
        )

    def get_stage(self, request_id: int) -> RequestStage:
        return self.store.stage_of(request_id)
