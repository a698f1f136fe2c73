from __future__ import annotations


class LocatorError(Exception):
    """定位引擎异常基类"""


class ConfigurationError(LocatorError):
    """配置无效：没有信标、参数越界等"""


class ScannerUnavailableError(LocatorError):
    """扫描端报告蓝牙不可用，定位会话被终止"""

    def __init__(self, state: str):
        super().__init__(f"蓝牙扫描不可用: {state}")
        self.state = state
