"""
预测模块

封装本地语言模型，根据拼音和上下文生成额外候选，
也提供上屏后的下一词预测和部分文本补全。
模型缺失或加载失败时静默降级：所有方法照常可调，只是返回空结果。
"""

import math
import os
import re
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from typing import Callable, Iterable, List, Optional, Protocol, Sequence, Tuple, Union

from pypinyin import lazy_pinyin

from .buffer import PinyinBuffer
from .config import Candidate
from .dictionary import compact_romanization
from .logging import get_predict_logger
from .memory import UserPatternMemory

logger = get_predict_logger()


# 连续的 CJK 字符
CJK_RUN = re.compile(r"[\u3400-\u9fff\uf900-\ufaff]+")


class PredictorBackend(Protocol):
    """模型推理后端"""

    def generate(self, syllables: Sequence[str], context: str, num_return: int) -> List[str]:
        ...

    def continue_text(self, context: str, num_return: int, max_new_chars: int) -> List[str]:
        ...

    def perplexities(self, texts: Sequence[str], context: str) -> List[float]:
        ...

    def describe(self) -> str:
        ...

    def close(self):
        ...


def default_loader(model_path: str) -> PredictorBackend:
    # torch 较重，只在真正加载模型时导入
    from .slm import SLMPredictor
    return SLMPredictor.load(model_path)


def extract_cjk_runs(texts: Iterable[str]) -> List[str]:
    """把生成文本按汉字连续片段切开，按首次出现顺序去重"""
    seen = set()
    words = []
    for text in texts:
        for run in CJK_RUN.findall(text or ""):
            if run not in seen:
                seen.add(run)
                words.append(run)
    return words


class PredictionAdapter:
    """
    预测适配器

    得分 = 基础分 0.6 + 用户选择过 0.3 + 不在上下文中 0.1，上限 1.0，
    低于阈值的候选丢弃。
    """

    BASE_SCORE = 0.6
    USER_PATTERN_BONUS = 0.3
    CONTEXT_BONUS = 0.1
    COMPLETION_BASE_SCORE = 0.7
    FLUENCY_WEIGHT = 0.3

    NEXT_WORD_CHARS = 2   # 下一词预测续写的字数
    COMPLETION_CHARS = 4  # 补全续写的字数

    def __init__(
        self,
        model_path: Optional[str] = None,
        threshold: float = 0.5,
        timeout_ms: Optional[int] = None,
        backend: Optional[PredictorBackend] = None,
        loader: Callable[[str], PredictorBackend] = None,
        segmenter: PinyinBuffer = None,
        pattern_capacity: int = 1000,
    ):
        self._loader = loader or default_loader
        self._threshold = self._clamp(threshold)
        self.timeout_ms = timeout_ms
        self.segmenter = segmenter if segmenter is not None else PinyinBuffer()
        self.patterns = UserPatternMemory(pattern_capacity)
        self._executor: Optional[ThreadPoolExecutor] = None

        self.model_path = model_path or ""
        self._backend: Optional[PredictorBackend] = backend
        if backend is None and model_path:
            self._backend = self._try_load(model_path)

    @staticmethod
    def _clamp(value: float) -> float:
        return max(0.0, min(1.0, float(value)))

    def _try_load(self, model_path: str) -> Optional[PredictorBackend]:
        if not os.path.exists(model_path):
            logger.warning(f"⚠ 模型文件不存在: {model_path}，预测已禁用")
            return None
        try:
            backend = self._loader(model_path)
        except Exception as e:
            logger.warning(f"⚠ 模型加载失败 ({model_path}): {e}，预测已禁用")
            return None
        logger.info(f"✓ 预测模型加载成功: {backend.describe()}")
        return backend

    def is_available(self) -> bool:
        return self._backend is not None

    def get_model_info(self) -> str:
        if not self.is_available():
            return "模型未加载"
        return self._backend.describe()

    def set_threshold(self, threshold: float):
        self._threshold = self._clamp(threshold)
        logger.debug(f"预测阈值: {self._threshold}")

    def get_threshold(self) -> float:
        return self._threshold

    def predict_from_romanization(
        self,
        romanization: str,
        context: str = "",
        max_predictions: int = 5,
    ) -> List[Candidate]:
        """
        根据拼音预测候选

        Args:
            romanization: 拼音输入（可不带分隔符，如 "nihao"）
            context: 上文
            max_predictions: 最大预测数量

        Returns:
            按得分降序的预测候选（is_prediction=True）
        """
        if not self.is_available() or max_predictions <= 0:
            return []

        key = compact_romanization(romanization)
        if not key:
            return []
        syllables = self.segmenter.best_segmentation(key)

        try:
            texts = self._call(self._backend.generate, syllables, context, max_predictions)
        except FutureTimeoutError:
            logger.warning(f"预测超时 ({key}, {self.timeout_ms}ms)，本次不返回预测")
            return []
        except Exception as e:
            logger.error(f"预测失败 ({key}): {e}")
            return []

        predictions = []
        for word in extract_cjk_runs(texts):
            if len(predictions) >= max_predictions:
                break
            score = self._score(word, key, context)
            if score >= self._threshold:
                predictions.append(Candidate(word, romanization, score, 0, True))

        predictions.sort(key=lambda c: c.score, reverse=True)
        return predictions

    def _call(self, fn: Callable, *args):
        """在推理时间预算内调用后端，超时抛出 FutureTimeoutError"""
        if self.timeout_ms is None:
            return fn(*args)

        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix='pinjian-predict')
        future = self._executor.submit(fn, *args)
        try:
            return future.result(timeout=self.timeout_ms / 1000.0)
        except FutureTimeoutError:
            future.cancel()
            raise

    def _score(self, word: str, key: str, context: str) -> float:
        score = self.BASE_SCORE
        if self.patterns.contains(key, word):
            score += self.USER_PATTERN_BONUS
        if word not in context:
            score += self.CONTEXT_BONUS
        return min(1.0, score)

    @staticmethod
    def _fluency(perplexity: float) -> float:
        """困惑度 → (0, 1] 的流畅度，无法计算时为 0"""
        if not math.isfinite(perplexity) or perplexity <= 0:
            return 0.0
        return min(1.0, 1.0 / perplexity)

    def _rank(self, scored: List[Tuple[str, float]], limit: int) -> List[Candidate]:
        candidates = [
            Candidate(text, ' '.join(lazy_pinyin(text)), score, 0, True)
            for text, score in scored
            if score >= self._threshold
        ]
        candidates.sort(key=lambda c: c.score, reverse=True)
        return candidates[:limit]

    def _next_words(self, backend: PredictorBackend, context: str, num_return: int) -> List[Tuple[str, float]]:
        texts = backend.continue_text(context, num_return * 2, self.NEXT_WORD_CHARS)
        # 上文里已经出现的词不再预测
        words = [w for w in extract_cjk_runs(texts) if w not in context]
        if not words:
            return []
        return list(zip(words, backend.perplexities(words, context)))

    def _completions(self, backend: PredictorBackend, partial: str, num_return: int) -> List[Tuple[str, float]]:
        texts = backend.continue_text(partial, num_return * 2, self.COMPLETION_CHARS)
        pieces = []
        for text in texts:
            # 只取紧接在部分文本后面的汉字
            match = CJK_RUN.match(text or "")
            if match and match.group() not in pieces:
                pieces.append(match.group())
        if not pieces:
            return []
        return list(zip(pieces, backend.perplexities(pieces, partial)))

    def predict_next(self, context: str, max_predictions: int = 5) -> List[Candidate]:
        """
        上屏后预测下一个词

        得分 = 基础分 0.6 + 流畅度 × 0.3 + 不在上下文中 0.1（上文中已有的词直接丢弃），
        流畅度为 1 / 困惑度。

        Args:
            context: 已上屏的文本
            max_predictions: 最大预测数量

        Returns:
            按得分降序的预测候选（is_prediction=True，拼音由 pypinyin 生成）
        """
        if not self.is_available() or max_predictions <= 0 or not context.strip():
            return []

        try:
            scored = self._call(self._next_words, self._backend, context, max_predictions)
        except FutureTimeoutError:
            logger.warning(f"下一词预测超时 ({self.timeout_ms}ms)，本次不返回预测")
            return []
        except Exception as e:
            logger.error(f"下一词预测失败: {e}")
            return []

        base = self.BASE_SCORE + self.CONTEXT_BONUS
        return self._rank(
            [(word, min(1.0, base + self.FLUENCY_WEIGHT * self._fluency(ppl))) for word, ppl in scored],
            max_predictions,
        )

    def complete_partial_input(self, partial: str, max_completions: int = 5) -> List[Candidate]:
        """
        补全部分文本

        得分 = 基础分 0.7 + 流畅度 × 0.3。

        Returns:
            完整文本（部分文本 + 续写）作为候选，按得分降序
        """
        if not self.is_available() or max_completions <= 0 or not partial.strip():
            return []

        try:
            scored = self._call(self._completions, self._backend, partial, max_completions)
        except FutureTimeoutError:
            logger.warning(f"补全超时 ({partial}, {self.timeout_ms}ms)，本次不返回补全")
            return []
        except Exception as e:
            logger.error(f"补全失败 ({partial}): {e}")
            return []

        base = self.COMPLETION_BASE_SCORE
        return self._rank(
            [(partial + piece, min(1.0, base + self.FLUENCY_WEIGHT * self._fluency(ppl))) for piece, ppl in scored],
            max_completions,
        )

    def calculate_perplexity(self, text: str, context: str = "") -> float:
        """在上文条件下计算文本困惑度；模型不可用或计算失败时返回 inf"""
        if not self.is_available() or not text:
            return float('inf')
        try:
            return float(self._call(self._backend.perplexities, [text], context)[0])
        except FutureTimeoutError:
            logger.warning(f"困惑度计算超时 ({self.timeout_ms}ms)")
        except Exception as e:
            logger.error(f"困惑度计算失败: {e}")
        return float('inf')

    def learn_user_pattern(self, input_sequence: Union[str, Sequence[str]], selected_text: str) -> bool:
        """记录 输入 → 选择 的对应关系（仅进程内有效）"""
        if not self.is_available() or not selected_text:
            return False
        if not isinstance(input_sequence, str):
            input_sequence = ''.join(input_sequence)
        key = compact_romanization(input_sequence)
        if not key:
            return False

        self.patterns.add(key, selected_text)
        logger.debug(f"记录用户选择: {key} -> {selected_text}")
        return True

    def load_model(self, model_path: str) -> bool:
        """加载模型，成功后替换当前模型；失败时保留原模型"""
        backend = self._try_load(model_path)
        if backend is None:
            return False
        old, self._backend = self._backend, backend
        self.model_path = model_path
        if old is not None:
            old.close()
        return True

    def update_model(self, new_model_path: str) -> bool:
        """切换模型；路径未变化时直接返回成功"""
        if new_model_path == self.model_path:
            return True
        if not os.path.exists(new_model_path):
            logger.error(f"新模型文件不存在: {new_model_path}")
            return False
        return self.load_model(new_model_path)

    def shutdown(self):
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None
        if self._backend is not None:
            self._backend.close()
            self._backend = None
