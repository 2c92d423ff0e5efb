"""
组合引擎

把按键事件驱动成 拼音缓冲区 → 词库查询 + 模型预测 → 候选列表 → 上屏。
状态机: IDLE → COMPOSING → SELECTING → IDLE
"""

import threading
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from typing import Callable, List, Optional

from .buffer import PinyinBuffer
from .config import (
    Candidate,
    CompositionUpdate,
    EngineConfig,
    InputEvent,
    InputEventType,
    InputState,
)
from .dictionary import DictionaryStore
from .logging import get_engine_logger, log_execution_time, set_log_level
from .prediction import PredictionAdapter

logger = get_engine_logger()

CandidateCallback = Callable[[List[Candidate]], None]
CommitCallback = Callable[[str], None]
StateChangeCallback = Callable[[InputState], None]


class CompositionEngine:
    """
    输入法组合引擎

    单线程协作式使用：一次 process_input 处理完才接受下一次。
    开启 async_prediction 时模型推理放到后台线程，
    每次缓冲区变化都会使在途的预测过期，过期结果直接丢弃。
    """

    KEY_BACKSPACE = 8
    KEY_ENTER = 13
    KEY_ESCAPE = 27

    def __init__(
        self,
        config: EngineConfig,
        dictionary: DictionaryStore,
        predictor: PredictionAdapter,
        buffer: PinyinBuffer = None,
    ):
        self.config = config
        self.dictionary = dictionary
        self.predictor = predictor
        self.buffer = buffer if buffer is not None else PinyinBuffer(multi_syllable=config.multi_syllable_input)

        self.predictor.set_threshold(config.prediction_threshold)
        self.predictor.timeout_ms = config.prediction_timeout_ms

        self._state = InputState.IDLE
        self._candidates: List[Candidate] = []
        self._last_commit: Optional[str] = None

        self._candidate_callback: Optional[CandidateCallback] = None
        self._commit_callback: Optional[CommitCallback] = None
        self._state_change_callback: Optional[StateChangeCallback] = None

        # 缓冲区每变化一次 +1，用来判断后台预测是否过期
        self._generation = 0
        self._lock = threading.RLock()
        self._executor: Optional[ThreadPoolExecutor] = None
        self._pending: Optional[Future] = None

        self.stats = {
            'events': 0,
            'commits': 0,
            'selections': 0,
            'queries': 0,
            'predictions': 0,
            'stale_predictions': 0,
        }

    # ------------------------------------------------------------------
    # 回调与查询
    # ------------------------------------------------------------------

    def set_candidate_callback(self, callback: Optional[CandidateCallback]):
        self._candidate_callback = callback

    def set_commit_callback(self, callback: Optional[CommitCallback]):
        self._commit_callback = callback

    def set_state_change_callback(self, callback: Optional[StateChangeCallback]):
        self._state_change_callback = callback

    def get_candidates(self) -> List[Candidate]:
        with self._lock:
            return list(self._candidates)

    def get_composition(self) -> str:
        return self.buffer.text

    def get_state(self) -> InputState:
        return self._state

    def get_config(self) -> EngineConfig:
        return self.config

    def get_stats(self) -> dict:
        return {
            **self.stats,
            'state': self._state.value,
            'composition': self.buffer.text,
            'candidates': len(self._candidates),
            'prediction_available': self.predictor.is_available(),
            'model': self.predictor.get_model_info(),
        }

    # ------------------------------------------------------------------
    # 事件入口
    # ------------------------------------------------------------------

    def process_input(self, event: InputEvent) -> CompositionUpdate:
        """处理一个输入事件，返回处理后的组合状态"""
        with self._lock:
            self.stats['events'] += 1
            self._last_commit = None

            if event.kind == InputEventType.KEY_PRESS:
                handled = self._handle_key(event)
            elif event.kind == InputEventType.CANDIDATE_SELECT:
                handled = self._handle_candidate_select(event)
            elif event.kind == InputEventType.COMMIT_TEXT:
                self._commit(event.payload)
                self.clear_composition()
                handled = True
            elif event.kind == InputEventType.CLEAR_COMPOSITION:
                self.clear_composition()
                handled = True
            else:
                handled = False

            return CompositionUpdate(
                handled=handled,
                state=self._state,
                composition=self.buffer.text,
                candidates=list(self._candidates),
                committed_text=self._last_commit,
            )

    def _handle_key(self, event: InputEvent) -> bool:
        # Ctrl/Alt 组合键交给宿主处理
        if event.modifiers.ctrl or event.modifiers.alt:
            return False

        code = event.key_code
        if not code and len(event.payload) == 1:
            code = ord(event.payload)

        if code == self.KEY_BACKSPACE:
            if not self.buffer.remove_last_char():
                return False
            self._generation += 1
            if self.buffer:
                self._set_state(InputState.COMPOSING)
            self.update_candidates()
            return True

        if code == self.KEY_ESCAPE:
            self.clear_composition()
            return True

        if code == self.KEY_ENTER:
            if not self.buffer:
                return False
            self.commit_composition()
            return True

        if not 0 < code < 0x110000:
            return False
        ch = chr(code)

        if '1' <= ch <= '9':
            index = ord(ch) - ord('1')
            if index < len(self._candidates):
                return self.select_candidate(index)

        if ch.isascii() and ch.isalpha():
            if self.buffer.add_char(ch.lower()):
                self._generation += 1
                self._set_state(InputState.COMPOSING)
                self.update_candidates()
                return True

        return False

    def _handle_candidate_select(self, event: InputEvent) -> bool:
        try:
            index = int(event.payload.strip())
        except ValueError:
            logger.debug(f"无效的候选序号: {event.payload!r}")
            return False
        return self.select_candidate(index)

    # ------------------------------------------------------------------
    # 候选
    # ------------------------------------------------------------------

    def _prediction_enabled(self) -> bool:
        return self.config.enable_prediction and self.predictor.is_available()

    def _prediction_slots(self, dictionary_count: int) -> int:
        return max(1, self.config.max_candidates - dictionary_count)

    @log_execution_time(logger)
    def update_candidates(self):
        """根据当前缓冲区重新计算候选并通知宿主"""
        with self._lock:
            composition = self.buffer.text
            if not composition:
                self._candidates = []
                self._set_state(InputState.IDLE)
                self._notify_candidates()
                return

            self.stats['queries'] += 1
            dict_candidates = self.dictionary.search_by_romanization(
                composition, self.config.max_candidates
            )

            predictions: List[Candidate] = []
            use_prediction = self._prediction_enabled()
            slots = self._prediction_slots(len(dict_candidates))
            if use_prediction and not self.config.async_prediction:
                self.stats['predictions'] += 1
                predictions = self.predictor.predict_from_romanization(composition, "", slots)

            self._apply_candidates(self._merge(dict_candidates, predictions))

            if use_prediction and self.config.async_prediction:
                self._schedule_prediction(composition, dict_candidates, slots)

    def _merge(self, dict_candidates: List[Candidate], predictions: List[Candidate]) -> List[Candidate]:
        """合并词库候选与预测候选：文本去重（词库优先）、阈值过滤、按得分排序、截断"""
        merged = list(dict_candidates)
        seen = {c.text for c in merged}
        for candidate in predictions:
            if candidate.text in seen or candidate.score < self.config.prediction_threshold:
                continue
            seen.add(candidate.text)
            merged.append(candidate)

        merged.sort(key=lambda c: c.score, reverse=True)
        return merged[:self.config.max_candidates]

    def _apply_candidates(self, candidates: List[Candidate]):
        self._candidates = candidates
        if candidates:
            self._set_state(InputState.SELECTING)
        self._notify_candidates()

    def _schedule_prediction(self, composition: str, dict_candidates: List[Candidate], slots: int):
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix='pinjian-engine')

        self.stats['predictions'] += 1
        self._pending = self._executor.submit(
            self._predict_in_background, self._generation, composition, dict_candidates, slots
        )

    def _predict_in_background(
        self,
        generation: int,
        composition: str,
        dict_candidates: List[Candidate],
        slots: int,
    ) -> bool:
        """后台线程：推理完成后只在 generation 仍是最新时更新候选"""
        if generation != self._generation:
            self.stats['stale_predictions'] += 1
            return False

        predictions = self.predictor.predict_from_romanization(composition, "", slots)

        with self._lock:
            if generation != self._generation:
                self.stats['stale_predictions'] += 1
                logger.debug(f"丢弃过期预测 (generation {generation} != {self._generation})")
                return False
            if predictions:
                self._apply_candidates(self._merge(dict_candidates, predictions))
            return True

    def wait_for_predictions(self, timeout: Optional[float] = None) -> bool:
        """等待在途的后台预测完成，返回是否在超时前完成"""
        future = self._pending
        if future is None:
            return True
        try:
            future.result(timeout=timeout)
        except FutureTimeoutError:
            return False
        return True

    # ------------------------------------------------------------------
    # 选择 / 上屏 / 清空
    # ------------------------------------------------------------------

    def select_candidate(self, index: int) -> bool:
        """选择第 index 个候选（从 0 开始）上屏；越界时不做任何改变"""
        with self._lock:
            if index < 0 or index >= len(self._candidates):
                return False

            candidate = self._candidates[index]
            if self.config.enable_learning:
                self._learn(candidate)

            self.stats['selections'] += 1
            self._commit(candidate.text)
            self.clear_composition()
            return True

    def _learn(self, candidate: Candidate):
        composition = self.buffer.text
        if candidate.is_prediction:
            # 预测出的新词收进用户词库
            self.dictionary.learn_user_input(
                candidate.text, self.buffer.best_segmentation(composition)
            )
        else:
            self.dictionary.update_word_frequency(candidate.text, candidate.romanization)
        self.predictor.learn_user_pattern(composition, candidate.text)

    def commit_composition(self) -> str:
        """原样上屏缓冲区中的拼音"""
        with self._lock:
            text = self.buffer.text
            if text:
                self._commit(text)
            self.clear_composition()
            return text

    def clear_composition(self):
        with self._lock:
            self.buffer.clear()
            self._generation += 1
            self._candidates = []
            self._state = InputState.IDLE
            self._notify_state()
            self._notify_candidates()

    def _commit(self, text: str):
        self.stats['commits'] += 1
        self._last_commit = text
        if self._commit_callback:
            self._commit_callback(text)

    # ------------------------------------------------------------------
    # 状态通知
    # ------------------------------------------------------------------

    def _set_state(self, state: InputState):
        if self._state != state:
            self._state = state
            self._notify_state()

    def _notify_state(self):
        if self._state_change_callback:
            self._state_change_callback(self._state)

    def _notify_candidates(self):
        if self._candidate_callback:
            self._candidate_callback(list(self._candidates))

    # ------------------------------------------------------------------
    # 配置 / 生命周期
    # ------------------------------------------------------------------

    def update_config(self, config: EngineConfig):
        """
        替换配置

        数值与开关立即生效；词库路径变化时重新打开词库（失败则保留旧词库并抛出异常），
        模型路径变化时切换模型（失败则保留旧模型），
        多音节输入开关变化时清空当前输入。
        """
        with self._lock:
            old = self.config

            if config.dictionary_path != old.dictionary_path:
                store = DictionaryStore(config.dictionary_path)
                self.clear_composition()
                previous, self.dictionary = self.dictionary, store
                previous.close()
                logger.info(f"词库已切换: {config.dictionary_path}")

            if config.enable_prediction:
                if config.model_path != self.predictor.model_path:
                    if not self.predictor.update_model(config.model_path):
                        logger.warning(f"⚠ 模型切换失败，继续使用: {self.predictor.get_model_info()}")
                elif not old.enable_prediction and not self.predictor.is_available():
                    self.predictor.load_model(config.model_path)

            self.predictor.set_threshold(config.prediction_threshold)
            self.predictor.timeout_ms = config.prediction_timeout_ms
            if config.multi_syllable_input != self.buffer.multi_syllable:
                # 旧规则下的输入在新规则下可能不合法
                self.clear_composition()
                self.buffer.multi_syllable = config.multi_syllable_input
            if config.log_level != old.log_level:
                set_log_level(config.log_level)

            self.config = config
            logger.info("配置已更新")

    def shutdown(self):
        with self._lock:
            self._generation += 1
            if self._executor is not None:
                self._executor.shutdown(wait=False)
                self._executor = None
            self._pending = None
        self.predictor.shutdown()
        self.dictionary.close()
        logger.info("引擎已关闭")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.shutdown()
        return False


def create_engine(config: EngineConfig = None) -> CompositionEngine:
    """
    创建引擎

    词库打不开时抛出 DictionaryOpenError；模型缺失只会关闭预测。
    """
    config = config or EngineConfig()
    set_log_level(config.log_level)

    dictionary = DictionaryStore(config.dictionary_path)
    predictor = PredictionAdapter(
        model_path=config.model_path if config.enable_prediction else None,
        threshold=config.prediction_threshold,
        timeout_ms=config.prediction_timeout_ms,
    )
    engine = CompositionEngine(config, dictionary, predictor)

    logger.info("=" * 50)
    logger.info("拼简 组合引擎")
    logger.info(f"  词库: {config.dictionary_path}")
    logger.info(f"  预测: {'✓ ' + predictor.get_model_info() if predictor.is_available() else '✗'}")
    logger.info("=" * 50)
    return engine
