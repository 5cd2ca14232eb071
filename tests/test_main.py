"""
Tests for the HTTP surface.
"""

import pytest
from fastapi.testclient import TestClient

import main
import ppt_generator
from config import Settings
from errors import UpstreamFetchError
from models import PPTX_MEDIA_TYPE
from tests.conftest import drawn_shapes, open_pptx


@pytest.fixture
def client():
    return TestClient(main.app)


@pytest.mark.parametrize("path", ["/", "/health"])
def test_health(client, path):
    response = client.get(path)

    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_generate_returns_pptx(client):
    response = client.post("/generate", json={
        "title": "Quarterly Review",
        "author": "Ana",
        "slides": [
            {"title": "Intro", "objects": [{"text": {"text": "Hello"}}]},
            {"objects": [{"rect": {"x": 0, "y": 0, "w": "100%", "h": "100%", "fill": {"color": "FF0000"}}}]},
        ],
    })

    assert response.status_code == 200
    assert response.headers["content-type"] == PPTX_MEDIA_TYPE
    disposition = response.headers["content-disposition"]
    assert disposition.startswith("attachment;")
    assert 'filename="Quarterly_Review.pptx"' in disposition

    prs = open_pptx(response.content)
    assert len(prs.slides) == 2
    assert [shape.text_frame.text for shape in drawn_shapes(prs.slides[0])] == ["Hello"]
    assert drawn_shapes(prs.slides[1]) == []


def test_generate_without_slides_returns_title_deck(client):
    response = client.post("/generate", json={"title": "Empty"})

    assert response.status_code == 200
    assert len(open_pptx(response.content).slides) == 1


def test_non_ascii_title_gets_encoded_filename(client):
    response = client.post("/generate", json={"title": "Résumé 2024", "slides": []})

    disposition = response.headers["content-disposition"]
    assert 'filename="Rsum_2024.pptx"' in disposition
    assert "filename*=UTF-8''R%C3%A9sum%C3%A9_2024.pptx" in disposition


def test_slides_must_be_an_array(client):
    response = client.post("/generate", json={"slides": "not-a-list"})

    assert response.status_code == 400
    assert response.json() == {"error": "InputValidationError", "details": "Missing or invalid slides array"}


@pytest.mark.parametrize("body", [
    b"{not json",
    b"",
    b"[1, 2]",
    b'{"title": 42}',
    b'{"layout": "LAYOUT_HUGE"}',
])
def test_invalid_bodies_are_rejected(client, body):
    response = client.post("/generate", content=body, headers={"Content-Type": "application/json"})

    assert response.status_code == 400
    assert response.json()["error"] == "InputValidationError"


def test_oversized_body_is_rejected(client, monkeypatch):
    monkeypatch.setattr(main, "get_settings", lambda: Settings(max_body_bytes=64))
    response = client.post("/generate", json={"title": "x" * 200})

    assert response.status_code == 413
    assert response.json()["error"] == "PayloadTooLarge"


def test_oversized_chunked_body_is_rejected(client, monkeypatch):
    monkeypatch.setattr(main, "get_settings", lambda: Settings(max_body_bytes=64))

    def chunks():
        yield b'{"title": "'
        for _ in range(10):
            yield b"x" * 20
        yield b'"}'

    response = client.post("/generate", content=chunks(), headers={"Content-Type": "application/json"})

    assert response.status_code == 413
    assert response.json()["error"] == "PayloadTooLarge"


def test_build_failure_returns_500_without_traceback(client, monkeypatch):
    def explode(*args, **kwargs):
        raise RuntimeError("encoder exploded")

    monkeypatch.setattr(ppt_generator, "create_presentation", explode)
    response = client.post("/generate", json={"slides": []})

    assert response.status_code == 500
    body = response.json()
    assert body["error"] == "BuildError"
    assert "encoder exploded" in body["details"]
    assert "traceback" not in body


def test_build_failure_includes_traceback_in_debug_mode(client, monkeypatch):
    def explode(*args, **kwargs):
        raise RuntimeError("encoder exploded")

    monkeypatch.setattr(ppt_generator, "create_presentation", explode)
    monkeypatch.setattr(main, "get_settings", lambda: Settings(debug=True))
    response = client.post("/generate", json={"slides": []})

    assert response.status_code == 500
    assert "RuntimeError" in response.json()["traceback"]


def test_add_text_route(client):
    response = client.post("/api/slide/add-text", json={"text": ["• a", "b"], "options": {"bullet": True}})

    assert response.status_code == 200
    slide = open_pptx(response.content).slides[0]
    assert drawn_shapes(slide)[0].text_frame.text == "a\nb"


def test_add_table_route_wraps_flat_body(client):
    response = client.post("/api/slide/add-table", json={"rows": [["a", "b"]], "layout": "LAYOUT_4x3"})

    assert response.status_code == 200
    prs = open_pptx(response.content)
    assert drawn_shapes(prs.slides[0])[0].has_table


def test_add_shape_and_chart_routes(client):
    shape = client.post("/api/slide/add-shape", json={"type": "roundRect", "x": 1, "y": 1})
    chart = client.post("/api/slide/add-chart", json={
        "type": "pie", "data": [{"name": "Share", "labels": ["a", "b"], "values": [60, 40]}],
    })

    assert shape.status_code == 200
    assert chart.status_code == 200
    assert drawn_shapes(open_pptx(chart.content).slides[0])[0].has_chart


def test_add_image_route(client, png_reference):
    response = client.post("/api/slide/add-image", json={"data": png_reference, "w": 1, "h": 1})

    assert response.status_code == 200


def test_add_image_route_reports_fetch_failure(client, monkeypatch):
    def fail(source, timeout, max_bytes):
        raise UpstreamFetchError(f"Timed out fetching {source}")

    monkeypatch.setattr(ppt_generator, "fetch_asset", fail)
    response = client.post("/api/slide/add-image", json={"path": "https://example.com/a.png"})

    assert response.status_code == 502
    assert response.json()["error"] == "UpstreamFetchError"


@pytest.mark.parametrize("path, body", [
    ("/api/slide/add-chart", {"text": "not a chart"}),
    ("/api/slide/add-image", {"x": 1}),
    ("/api/slide/add-text", {"foo": "bar"}),
    ("/api/slide/add-table", {"rows": ["bad row"]}),
])
def test_element_routes_reject_mismatched_bodies(client, path, body):
    response = client.post(path, json=body)

    assert response.status_code == 400
    assert response.json()["error"] == "InputValidationError"
