from dataclasses import dataclass, field, asdict, fields
from enum import Enum
from typing import List, Optional

import orjson


@dataclass
class EngineConfig:
    """引擎配置"""
    dictionary_path: str = "data/dictionary.db"
    model_path: str = "models/slm/best.pt"
    max_candidates: int = 9
    enable_prediction: bool = True
    enable_learning: bool = True
    prediction_threshold: float = 0.5

    async_prediction: bool = False              # 后台线程推理，过期结果丢弃
    prediction_timeout_ms: Optional[int] = 300  # 同步推理的时间预算，None 为不限
    multi_syllable_input: bool = True           # 缓冲区允许跨多个音节
    log_level: str = "INFO"

    def __post_init__(self):
        if not isinstance(self.max_candidates, int) or self.max_candidates <= 0:
            raise ValueError(f"max_candidates 必须为正整数: {self.max_candidates!r}")
        if not 0.0 <= float(self.prediction_threshold) <= 1.0:
            raise ValueError(f"prediction_threshold 必须在 [0, 1] 内: {self.prediction_threshold!r}")

    @classmethod
    def from_dict(cls, data: dict) -> 'EngineConfig':
        """从字典创建配置，忽略未知字段"""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    def to_dict(self) -> dict:
        return asdict(self)


def load_config(path: str) -> EngineConfig:
    """从 JSON 文件加载配置"""
    with open(path, 'rb') as f:
        return EngineConfig.from_dict(orjson.loads(f.read()))


@dataclass
class Candidate:
    """候选词"""
    text: str
    romanization: str
    score: float = 0.0
    frequency: int = 0
    is_prediction: bool = False


class InputState(Enum):
    """输入状态"""
    IDLE = "idle"            # 空闲
    COMPOSING = "composing"  # 输入中
    SELECTING = "selecting"  # 选择候选词


class InputEventType(Enum):
    KEY_PRESS = "key_press"
    CANDIDATE_SELECT = "candidate_select"
    COMMIT_TEXT = "commit_text"
    CLEAR_COMPOSITION = "clear_composition"


@dataclass
class Modifiers:
    ctrl: bool = False
    shift: bool = False
    alt: bool = False


@dataclass
class InputEvent:
    """输入事件"""
    kind: InputEventType
    payload: str = ""
    key_code: int = 0
    modifiers: Modifiers = field(default_factory=Modifiers)

    @classmethod
    def key(cls, ch: str) -> 'InputEvent':
        """由单个字符构造按键事件"""
        return cls(InputEventType.KEY_PRESS, ch, ord(ch))


@dataclass
class CompositionUpdate:
    """一次 process_input 之后的组合状态快照"""
    handled: bool
    state: InputState
    composition: str = ""
    candidates: List[Candidate] = field(default_factory=list)
    committed_text: Optional[str] = None
