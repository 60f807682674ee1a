from warden.state.action_log import ActionLogError, ActionLogStore

__all__ = ["ActionLogError", "ActionLogStore"]
