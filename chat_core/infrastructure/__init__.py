"""基础设施层（日志等）。"""
