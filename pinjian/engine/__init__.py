from .config import (
    EngineConfig,
    Candidate,
    InputState,
    InputEventType,
    InputEvent,
    Modifiers,
    CompositionUpdate,
    load_config,
)
from .buffer import PinyinBuffer, SegmentResult
from .dictionary import DictionaryStore, DictionaryEntry, DictionaryOpenError
from .memory import UserPatternMemory
from .prediction import PredictionAdapter, PredictorBackend, extract_cjk_runs
from .core import CompositionEngine, create_engine
from .logging import setup_logging, get_logger, get_engine_logger

__all__ = [
    # 引擎
    'CompositionEngine',
    'create_engine',
    'EngineConfig',
    'load_config',
    'Candidate',
    'InputState',
    'InputEventType',
    'InputEvent',
    'Modifiers',
    'CompositionUpdate',
    # 拼音
    'PinyinBuffer',
    'SegmentResult',
    # 词库
    'DictionaryStore',
    'DictionaryEntry',
    'DictionaryOpenError',
    # 预测
    'PredictionAdapter',
    'PredictorBackend',
    'UserPatternMemory',
    'extract_cjk_runs',
    # 日志
    'setup_logging',
    'get_logger',
    'get_engine_logger',
]
