from collections import OrderedDict
from typing import List


class UserPatternMemory:
    """
    用户选择记忆：输入序列 → 选过的文本

    输入序列超出 capacity 时淘汰最早的输入序列；
    同一输入序列下的文本超出 max_texts_per_key 时淘汰最早的文本。
    """

    def __init__(self, capacity: int = 1000, max_texts_per_key: int = 16):
        self.capacity = capacity
        self.max_texts_per_key = max_texts_per_key
        self._patterns: "OrderedDict[str, List[str]]" = OrderedDict()

    def add(self, key: str, text: str):
        if key in self._patterns:
            texts = self._patterns[key]
            if text not in texts:
                if len(texts) >= self.max_texts_per_key:
                    texts.pop(0)
                texts.append(text)
            return

        if len(self._patterns) >= self.capacity:
            self._patterns.popitem(last=False)
        self._patterns[key] = [text]

    def get(self, key: str) -> List[str]:
        return list(self._patterns.get(key, ()))

    def contains(self, key: str, text: str) -> bool:
        return text in self._patterns.get(key, ())

    def clear(self):
        self._patterns.clear()

    def __len__(self):
        return len(self._patterns)

    def __contains__(self, key: str):
        return key in self._patterns
