from auditbot.models.setting import Setting

__all__ = ["Setting"]
