from .views import inventory_bp

__all__ = ["inventory_bp"]
