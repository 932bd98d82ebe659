"""Super resolution plugin."""

manifest = {
    "title": "Super Resolution",
    "summary": "Tiled, cancellable Real-ESRGAN upscaling for lab and microscopy imagery.",
    "blueprint": "super_resolution",
    "category": "Image Enhancement",
    "endpoints": {
        "health": "/api/v1/super_resolution/health",
        "predict": "/api/v1/super_resolution/predict",
        "abort": "/api/v1/super_resolution/abort",
        "warmup": "/api/v1/super_resolution/warmup",
    },
}


__all__ = ["manifest"]
