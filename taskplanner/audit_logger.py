import json
import os

from taskplanner.event_bus import EventBus, OrchestrationEvent


class AuditLogger:
    """
    Subscribes to an EventBus and appends every event to a JSONL file.
    """

    def __init__(self, file_path: str, event_bus: EventBus):
        self.file_path = file_path
        self.event_bus = event_bus

        os.makedirs(os.path.dirname(os.path.abspath(self.file_path)), exist_ok=True)
        self.event_bus.subscribe(self.log_event)

    def log_event(self, event: OrchestrationEvent) -> None:
        with open(self.file_path, "a", encoding="utf-8") as f:
            f.write(json.dumps(event.model_dump()) + "\n")
