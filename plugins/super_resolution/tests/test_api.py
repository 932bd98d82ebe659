from io import BytesIO

import pytest
from PIL import Image

from app import create_app
from plugins.super_resolution.core import ModelLoadError


@pytest.fixture
def make_client(loader):
    apps = []

    def _make(loader_override=None, **settings):
        app = create_app("TestingConfig")
        app.config["SUPER_RESOLUTION_LOADER"] = loader_override or loader
        plugin_settings = {
            "enabled": True,
            "device": "cpu",
            "max_upload_mb": 1,
            "default_model": "RealESRGAN_x2plus",
            "models": {
                "RealESRGAN_x2plus": {
                    "weights_path": "models/super_resolution/weights/RealESRGAN_x2plus.pth",
                    "scale": 2,
                }
            },
        }
        plugin_settings.update(settings)
        app.config["PLUGIN_SETTINGS"]["super_resolution"] = plugin_settings
        apps.append(app)
        return app.test_client()

    yield _make
    for app in apps:
        service = app.extensions.get("super_resolution")
        if service is not None:
            service.close()


def _predict(client, image: bytes, **fields):
    data = {"image": (BytesIO(image), "sample.png"), **fields}
    return client.post(
        "/api/v1/super_resolution/predict", data=data, content_type="multipart/form-data"
    )


def test_health_endpoint_reports_status(make_client):
    client = make_client()
    response = client.get("/api/v1/super_resolution/health")
    assert response.status_code == 200
    payload = response.get_json()
    assert payload["success"] is True
    data = payload["data"]
    assert data["status"] == "ok"
    assert data["model_name"] == "RealESRGAN_x2plus"
    assert data["device"] in {"cpu", "cuda"}
    assert data["model_loaded"] is False


def test_predict_endpoint_returns_image(make_client, png_bytes):
    client = make_client()
    response = _predict(client, png_bytes, model="RealESRGAN_x2plus", output_format="png")
    assert response.status_code == 200
    assert response.mimetype == "image/png"
    assert response.data.startswith(b"\x89PNG")
    assert response.headers["X-Image-Width"] == "20"
    with Image.open(BytesIO(response.data)) as image:
        assert image.size == (20, 20)

    health = client.get("/api/v1/super_resolution/health").get_json()["data"]
    assert health["model_loaded"] is True


def test_predict_tiles_with_form_parameters(make_client, loader, png_bytes):
    client = make_client()
    response = _predict(client, png_bytes, patch_size="5", padding="2", output_format="jpg")
    assert response.status_code == 200
    assert response.mimetype == "image/jpeg"
    assert len(loader.model.calls) == 4


def test_predict_requires_image(make_client):
    client = make_client()
    response = client.post(
        "/api/v1/super_resolution/predict", data={}, content_type="multipart/form-data"
    )
    assert response.status_code == 400
    assert response.get_json()["error"]["code"] == "super_resolution.missing_image"


@pytest.mark.parametrize(
    "fields,code",
    [
        ({"patch_size": "0"}, "super_resolution.invalid_parameters"),
        ({"padding": "-3"}, "super_resolution.invalid_parameters"),
        ({"model": "RealESRGAN_x8"}, "super_resolution.invalid_parameters"),
        ({"output_format": "gif"}, "super_resolution.invalid_input"),
    ],
)
def test_predict_rejects_bad_parameters(make_client, png_bytes, fields, code):
    client = make_client()
    response = _predict(client, png_bytes, **fields)
    assert response.status_code == 400
    assert response.get_json()["error"]["code"] == code


def test_predict_rejects_non_image_upload(make_client):
    client = make_client()
    response = _predict(client, b"plain text body")
    assert response.status_code == 400


def test_predict_reports_missing_weights(make_client, loader_factory, png_bytes):
    loader = loader_factory(error=ModelLoadError("Missing weights file"))
    client = make_client(loader_override=loader)
    response = _predict(client, png_bytes)
    assert response.status_code == 500
    payload = response.get_json()
    assert payload["success"] is False
    assert payload["error"]["code"] == "super_resolution.missing_weights"


def test_predict_disabled_returns_not_found(make_client, png_bytes):
    client = make_client(enabled=False)
    response = _predict(client, png_bytes)
    assert response.status_code == 404


def test_abort_endpoint_counts_in_flight_work(make_client):
    client = make_client()
    response = client.post("/api/v1/super_resolution/abort", json={})
    assert response.status_code == 200
    assert response.get_json()["data"] == {"aborted": 0, "model": None}

    response = client.post("/api/v1/super_resolution/abort", json={"model": "nope"})
    assert response.status_code == 400


def test_warmup_endpoint_runs_passes(make_client, loader):
    client = make_client()
    response = client.post(
        "/api/v1/super_resolution/warmup", json={"sizes": [16, {"patch_size": 8, "padding": 2}]}
    )
    assert response.status_code == 200
    assert response.get_json()["data"]["warmed"] == 2
    assert loader.model.calls == [(1, 16, 16, 3), (1, 12, 12, 3)]


def test_warmup_endpoint_validates_payload(make_client):
    client = make_client()
    response = client.post("/api/v1/super_resolution/warmup", json={"sizes": "big"})
    assert response.status_code == 400
    response = client.post("/api/v1/super_resolution/warmup", json={"sizes": 0})
    assert response.status_code == 400
