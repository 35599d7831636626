from importlib import import_module

__all__ = [
    "queue_service",
    "QueueService",
    "ai_config_cache",
    "AIConfigCache",
]

_LAZY_EXPORTS = {
    "queue_service": ("services.queue", "queue_service"),
    "QueueService": ("services.queue", "QueueService"),
    "ai_config_cache": ("services.ai_config", "ai_config_cache"),
    "AIConfigCache": ("services.ai_config", "AIConfigCache"),
}


def __getattr__(name):
    if name not in _LAZY_EXPORTS:
        raise AttributeError(f"module 'services' has no attribute {name!r}")

    module_name, attr_name = _LAZY_EXPORTS[name]
    module = import_module(module_name)
    value = getattr(module, attr_name)
    globals()[name] = value
    return value
