"""
PinJian - 拼音输入法组合引擎

拼音缓冲区 + SQLite 词库 + 可选的本地语言模型预测
"""

__version__ = "0.1.0"

from pinjian.engine import (
    CompositionEngine,
    create_engine,
    EngineConfig,
    load_config,
    Candidate,
    InputState,
    InputEventType,
    InputEvent,
    CompositionUpdate,
    PinyinBuffer,
    DictionaryStore,
    DictionaryOpenError,
    PredictionAdapter,
)

__all__ = [
    "__version__",
    # 引擎
    "CompositionEngine",
    "create_engine",
    "EngineConfig",
    "load_config",
    "Candidate",
    "InputState",
    "InputEventType",
    "InputEvent",
    "CompositionUpdate",
    # 组件
    "PinyinBuffer",
    "DictionaryStore",
    "DictionaryOpenError",
    "PredictionAdapter",
]
