from .base import CONFIG_BY_ENV, Config, DevelopmentConfig, ProductionConfig, TestingConfig, config_for

__all__ = ["Config", "DevelopmentConfig", "TestingConfig", "ProductionConfig", "CONFIG_BY_ENV", "config_for"]
