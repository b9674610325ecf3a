from .routes_quests import router

__all__ = ["router"]
