from wolk.config.schema import WolkConfig

__all__ = ["WolkConfig"]
