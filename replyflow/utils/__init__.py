"""通用工具：日志与指标。"""
