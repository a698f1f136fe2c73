"""
入口转发

定位引擎已封装为可复用的包与 CLI：
  - 包名: ble_indoor_locator
  - CLI: ble-indoor-locator

此文件仅用于兼容 `python main.py` 的运行方式，会转发到 `ble_indoor_locator.cli:main`。
"""

from ble_indoor_locator.cli import main as _cli_main


def main():
    return _cli_main()


if __name__ == "__main__":  # pragma: no cover
    main()
