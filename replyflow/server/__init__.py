"""HTTP 服务层。"""

from replyflow.server.app_factory import create_app
from replyflow.server.runtime import AutomationRuntime

__all__ = ["create_app", "AutomationRuntime"]
