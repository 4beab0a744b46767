from defect_map.core.presentation import (
    PLACEHOLDER_IMAGE_URL,
    available_defect_types,
    build_feature_collection,
    filter_by_type,
    format_defect_counts,
    format_defect_type,
    summarize,
)
from defect_map.core.selection import SelectionState


def test_feature_collection_uses_lon_lat_and_severity(make_detection) -> None:
    detection = make_detection("A", SeverityLevel=0.55, GPSLocation=[10.0, 20.0])

    collection = build_feature_collection([detection])

    assert collection["type"] == "FeatureCollection"
    feature = collection["features"][0]
    assert feature["geometry"]["coordinates"] == [20.0, 10.0]
    assert feature["properties"]["severityLevel"] == "Severe"
    assert feature["properties"]["color"] == "#ef4444"
    assert feature["properties"]["type"] == "pothole"


def test_filter_by_type_is_case_insensitive_exact(make_detection) -> None:
    detections = [
        make_detection("A", DominantDefectType="Pothole"),
        make_detection("B", DominantDefectType="linear-crack"),
        make_detection("C", DominantDefectType="pothole-large"),
    ]

    assert [item.id for item in filter_by_type(detections, "POTHOLE")] == ["A"]
    assert [item.id for item in filter_by_type(detections, None)] == ["A", "B", "C"]
    assert [item.id for item in filter_by_type(detections, "  ")] == ["A", "B", "C"]
    assert build_feature_collection(detections, "linear-crack")["features"][0]["id"] == "B"


def test_defect_type_catalogue_and_labels(make_detection) -> None:
    detections = [
        make_detection("A", DefectCounts={"pothole": 1}, DominantDefectType="pothole"),
        make_detection("B", DefectCounts={"alligator-crack": 2}, DominantDefectType="patch"),
    ]

    assert available_defect_types(detections) == ["alligator-crack", "patch", "pothole"]
    assert format_defect_type("linear-crack") == "Linear Crack"
    assert format_defect_type("rutting") == "Rutting"
    assert format_defect_counts({"pothole": 2, "patch": 1}) == "Pothole: 2, Patch: 1"


def test_summary_falls_back_to_placeholder_image(make_detection) -> None:
    detection = make_detection("A", RepairProbability=0).model_copy(update={"image_url": ""})

    summary = summarize(detection)

    assert summary["imageUrl"] == PLACEHOLDER_IMAGE_URL
    assert summary["repair"] == "No"
    assert summary["severityLevel"] == "Moderate"


def test_selection_toggle_and_focus(make_detection) -> None:
    state = SelectionState(focus_zoom=16.0)
    received = []
    unsubscribe = state.subscribe(received.append)

    assert state.toggle("pothole") == "pothole"
    assert state.toggle("Pothole") is None
    state.select("crack")
    state.clear()
    assert state.selected_defect_type is None

    request = state.focus(make_detection("A", GPSLocation=[10.0, 20.0]))
    assert request.center == (20.0, 10.0)
    assert request.zoom == 16.0
    assert received == [request]

    unsubscribe()
    state.focus(make_detection("B"))
    assert len(received) == 1


def test_failing_focus_listener_does_not_block_others(make_detection) -> None:
    state = SelectionState()
    received = []

    def broken(_request) -> None:
        raise RuntimeError("map not mounted")

    state.subscribe(broken)
    state.subscribe(received.append)

    state.focus(make_detection("A"))

    assert [item.id for item in received] == ["A"]
