import logging
from typing import Callable, List, Optional

from defect_map.core.models import Detection, FocusRequest


logger = logging.getLogger(__name__)

FocusListener = Callable[[FocusRequest], None]


class SelectionState:
    """Track the selected defect type and route focus requests to the map."""

    def __init__(self, focus_zoom: float = 17.0) -> None:
        self.focus_zoom = focus_zoom
        self.selected_defect_type: Optional[str] = None
        self._listeners: List[FocusListener] = []

    def select(self, defect_type: Optional[str]) -> Optional[str]:
        if defect_type is not None:
            defect_type = defect_type.strip() or None
        self.selected_defect_type = defect_type
        return self.selected_defect_type

    def toggle(self, defect_type: str) -> Optional[str]:
        current = self.selected_defect_type
        if current is not None and current.casefold() == defect_type.strip().casefold():
            return self.select(None)
        return self.select(defect_type)

    def clear(self) -> None:
        self.selected_defect_type = None

    def subscribe(self, listener: FocusListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def focus(self, detection: Detection) -> FocusRequest:
        request = FocusRequest(
            id=detection.id,
            center=(detection.longitude, detection.latitude),
            zoom=self.focus_zoom,
        )
        for listener in list(self._listeners):
            try:
                listener(request)
            except Exception:
                logger.exception("Focus listener failed for defect %s", detection.id)
        return request
