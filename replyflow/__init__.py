"""replyflow: 消息自动回复与转发服务。"""

__version__ = "0.1.0"
