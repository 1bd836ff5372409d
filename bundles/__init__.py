from .views import bundles_bp

__all__ = ["bundles_bp"]
