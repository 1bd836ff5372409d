from .views import loans_bp

__all__ = ["loans_bp"]
