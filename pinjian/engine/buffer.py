"""
拼音缓冲区 / 切分模块

功能：
1. 维护正在输入的拼音串，只接受能延续为合法音节序列的字母
2. 枚举当前缓冲区的全部音节切分方案（回溯）
3. 按音节得分挑选最优切分（动态规划）
"""

import re
from dataclasses import dataclass
from typing import Iterable, Iterator, List, Optional, Tuple

from .syllables import STANDARD_SYLLABLES, TONE_MARKS


@dataclass
class SegmentResult:
    """切分结果"""
    segments: List[str]  # 切分后的拼音列表
    score: float         # 切分得分（越高越好）

    def __str__(self):
        return " ".join(self.segments)


class Segmentations:
    """
    切分方案集合

    惰性枚举，每次迭代都从头回溯，可以反复遍历。
    """

    def __init__(self, text: str, syllables: frozenset, max_len: int):
        self.text = text
        self._syllables = syllables
        self._max_len = max_len

    def __iter__(self) -> Iterator[List[str]]:
        if not self.text:
            return iter(())
        return self._walk(0, [])

    def _walk(self, start: int, current: List[str]) -> Iterator[List[str]]:
        if start >= len(self.text):
            yield list(current)
            return

        # 尝试从 start 开始的每个长度
        end_limit = min(len(self.text), start + self._max_len)
        for end in range(start + 1, end_limit + 1):
            piece = self.text[start:end]
            if piece in self._syllables:
                current.append(piece)
                yield from self._walk(end, current)
                current.pop()


class PinyinBuffer:
    """
    拼音缓冲区

    所有操作都不抛异常，非法输入通过返回值报告。
    """

    def __init__(self, syllables: Iterable[str] = None, multi_syllable: bool = True):
        """
        Args:
            syllables: 音节表，默认使用标准拼音表
            multi_syllable: True 时缓冲区可以跨越多个音节（nihao），
                False 时缓冲区必须是单个音节的前缀
        """
        self.syllables = frozenset(syllables) if syllables is not None else STANDARD_SYLLABLES
        self.multi_syllable = multi_syllable
        self.max_syllable_len = max((len(s) for s in self.syllables), default=0)

        # 所有音节的非空前缀
        self._prefixes = frozenset(
            s[:i] for s in self.syllables for i in range(1, len(s) + 1)
        )
        self._text = ""

    @property
    def text(self) -> str:
        return self._text

    def __len__(self):
        return len(self._text)

    def __bool__(self):
        return bool(self._text)

    def add_char(self, ch: str) -> bool:
        """追加一个小写字母，不能延续为合法拼音时拒绝"""
        if not isinstance(ch, str) or len(ch) != 1 or not ('a' <= ch <= 'z'):
            return False

        candidate = self._text + ch
        if not self.is_valid_prefix(candidate):
            return False

        self._text = candidate
        return True

    def remove_last_char(self) -> bool:
        if not self._text:
            return False
        self._text = self._text[:-1]
        return True

    def clear(self):
        self._text = ""

    def is_valid_prefix(self, text: str) -> bool:
        """text 是否能作为（音节序列的）输入前缀"""
        if not text:
            return True
        if not self.multi_syllable:
            return text in self._prefixes

        n = len(text)
        reachable = [False] * (n + 1)
        reachable[0] = True
        for i in range(n):
            if not reachable[i]:
                continue
            # 剩余部分是某个音节的前缀
            if text[i:] in self._prefixes:
                return True
            for j in range(i + 1, min(n, i + self.max_syllable_len) + 1):
                if text[i:j] in self.syllables:
                    reachable[j] = True
        return reachable[n]

    def get_segments(self) -> Segmentations:
        """当前缓冲区的全部切分方案"""
        return Segmentations(self._text, self.syllables, self.max_syllable_len)

    def is_valid_pinyin(self, pinyin: str) -> bool:
        return pinyin in self.syllables

    def get_prefixes(self, pinyin: str) -> List[str]:
        """以 pinyin 开头的所有音节"""
        return sorted(s for s in self.syllables if s.startswith(pinyin))

    @staticmethod
    def normalize(pinyin: str) -> str:
        """
        标准化为无调小写拼音
        支持：字符音标(nǐ)、数字音标(ni3)、无调(ni)；ü → v；去掉非字母字符
        """
        pinyin = pinyin.lower().strip()
        result = []
        for char in pinyin:
            if char in TONE_MARKS:
                result.append(TONE_MARKS[char][0])
            else:
                result.append(char)
        pinyin = ''.join(result).replace('ü', 'v')
        return re.sub(r'[^a-z]', '', pinyin)

    def segment(self, text: str = None, top_k: int = 5) -> List[SegmentResult]:
        """
        按得分切分拼音串（动态规划）

        Args:
            text: 连续拼音字符串，默认使用当前缓冲区
            top_k: 返回最多 top_k 个切分方案

        Returns:
            切分结果列表，按得分降序
        """
        text = self._text if text is None else text
        if not text:
            return []

        n = len(text)

        # dp[i] = [(segments, score), ...] 表示 text[:i] 的切分方案
        dp: List[List[Tuple[List[str], float]]] = [[] for _ in range(n + 1)]
        dp[0] = [([], 1.0)]

        for i in range(1, n + 1):
            candidates = []
            for j in range(max(0, i - self.max_syllable_len), i):
                last = text[j:i]
                if last in self.syllables:
                    py_score = self._syllable_score(last)
                    for prev_segments, prev_score in dp[j]:
                        candidates.append((prev_segments + [last], prev_score * py_score))

            candidates.sort(key=lambda x: x[1], reverse=True)
            dp[i] = candidates[:top_k * 2]

        results = [SegmentResult(segments=s, score=score) for s, score in dp[n]]
        results.sort(key=lambda x: x.score, reverse=True)
        return results[:top_k]

    def best_segmentation(self, text: str = None) -> List[str]:
        """
        最优切分

        缓冲区以未完成音节结尾时（如 "nih"），返回最长可切分前缀的
        最优切分，再把剩余片段作为最后一段。
        """
        text = self._text if text is None else text
        if not text:
            return []

        for end in range(len(text), 0, -1):
            results = self.segment(text[:end], top_k=1)
            if results:
                tail = [text[end:]] if end < len(text) else []
                return results[0].segments + tail
        return [text]

    def _syllable_score(self, syllable: str) -> float:
        """单个音节的得分：更长的音节更具体，xian 优于 xi + an"""
        return 0.9 + len(syllable) * 0.05
