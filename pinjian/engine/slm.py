"""
SLM 语义语言模型 / 预测后端

轻量级字级自回归语言模型，配合拼音约束的 Beam Search，
根据拼音音节序列和上下文生成候选汉字串；
也可以不受拼音约束地续写上文，并计算困惑度。
"""

import os
from collections import defaultdict
from dataclasses import dataclass, asdict
from typing import Dict, List, Optional, Sequence, Tuple

import orjson
import torch
import torch.nn as nn
import torch.nn.functional as F
from pypinyin import Style, pinyin


@dataclass
class SLMConfig:
    """SLM 模型配置"""
    vocab_size: int = 8000           # 汉字词表大小
    d_model: int = 256               # 隐藏层维度
    n_heads: int = 4                 # 注意力头数
    n_layers: int = 4                # Transformer 层数
    d_ff: int = 1024                 # FFN 维度
    max_len: int = 128               # 最大序列长度
    dropout: float = 0.1

    # 特殊 token
    pad_id: int = 0
    bos_id: int = 1
    eos_id: int = 2
    unk_id: int = 3


class SLModel(nn.Module):
    """
    语义语言模型 (Semantic Language Model)

    基于 Transformer Decoder 的自回归语言模型
    """

    def __init__(self, config: SLMConfig):
        super().__init__()
        self.config = config

        self.embedding = nn.Embedding(config.vocab_size, config.d_model, padding_idx=config.pad_id)
        self.pos_embedding = nn.Embedding(config.max_len, config.d_model)

        decoder_layer = nn.TransformerDecoderLayer(
            d_model=config.d_model,
            nhead=config.n_heads,
            dim_feedforward=config.d_ff,
            dropout=config.dropout,
            batch_first=True
        )
        self.transformer = nn.TransformerDecoder(decoder_layer, config.n_layers)

        # 输出层（与嵌入层共享权重）
        self.output_projection = nn.Linear(config.d_model, config.vocab_size, bias=False)
        self.output_projection.weight = self.embedding.weight

        self.ln_f = nn.LayerNorm(config.d_model)
        self.dropout = nn.Dropout(config.dropout)

        self._init_weights()

    def _init_weights(self):
        for module in self.modules():
            if isinstance(module, nn.Linear):
                nn.init.normal_(module.weight, mean=0.0, std=0.02)
                if module.bias is not None:
                    nn.init.zeros_(module.bias)
            elif isinstance(module, nn.Embedding):
                nn.init.normal_(module.weight, mean=0.0, std=0.02)

    def forward(self, input_ids: torch.Tensor) -> torch.Tensor:
        """
        前向传播

        Args:
            input_ids: [batch, seq_len]，不含 padding

        Returns:
            logits: [batch, seq_len, vocab_size]
        """
        batch_size, seq_len = input_ids.shape
        device = input_ids.device

        position_ids = torch.arange(seq_len, device=device).unsqueeze(0).expand(batch_size, -1)
        x = self.embedding(input_ids) + self.pos_embedding(position_ids)
        x = self.dropout(x)

        causal_mask = torch.triu(
            torch.full((seq_len, seq_len), float('-inf'), device=device), diagonal=1
        )

        # decoder-only，memory 为空
        memory = torch.zeros(batch_size, 1, self.config.d_model, device=device)
        x = self.transformer(x, memory, tgt_mask=causal_mask)
        x = self.ln_f(x)
        return self.output_projection(x)

    @torch.no_grad()
    def next_token_log_probs(self, input_ids: torch.Tensor) -> torch.Tensor:
        """最后一个位置的下一个 token 对数概率 [batch, vocab_size]"""
        self.eval()
        logits = self(input_ids)[:, -1, :]
        return F.log_softmax(logits, dim=-1)

    @torch.no_grad()
    def compute_perplexity(
        self,
        input_ids: torch.Tensor,
        target_mask: Optional[torch.Tensor] = None,
    ) -> torch.Tensor:
        """
        计算困惑度 (Perplexity)

        困惑度越低，句子越流畅

        Args:
            input_ids: [batch, seq_len]，右侧用 pad_id 补齐
            target_mask: [batch, seq_len - 1]，只统计为 True 的目标位置（如跳过上文）

        Returns:
            perplexity: [batch]，没有可统计位置的句子为 inf
        """
        self.eval()

        logits = self(input_ids[:, :-1])
        targets = input_ids[:, 1:]

        # 逐 token 交叉熵
        log_probs = F.log_softmax(logits, dim=-1)
        token_losses = -log_probs.gather(2, targets.unsqueeze(-1)).squeeze(-1)

        # 掩码 padding
        mask = (targets != self.config.pad_id).float()
        if target_mask is not None:
            mask = mask * target_mask.float()
        token_losses = token_losses * mask

        seq_lens = mask.sum(dim=1)
        avg_loss = token_losses.sum(dim=1) / seq_lens.clamp(min=1)
        perplexity = torch.exp(avg_loss)
        return perplexity.masked_fill(seq_lens == 0, float('inf'))

    @torch.no_grad()
    def score_sentences(
        self,
        sentences: List[str],
        vocab: 'SLMVocab',
        device: torch.device = None,
    ) -> List[float]:
        """
        评分句子列表

        Returns:
            scores: 分数列表（负困惑度，越高越好）
        """
        if not sentences:
            return []
        device = device or next(self.parameters()).device
        limit = self.config.max_len

        encoded = []
        for sent in sentences:
            ids = [self.config.bos_id] + vocab.encode(sent)[:limit - 2] + [self.config.eos_id]
            encoded.append(ids)
        max_len = max(len(ids) for ids in encoded)

        padded = [ids + [self.config.pad_id] * (max_len - len(ids)) for ids in encoded]
        input_ids = torch.tensor(padded, dtype=torch.long, device=device)

        ppl = self.compute_perplexity(input_ids)
        return (-ppl).tolist()


class SLMVocab:
    """SLM 字表"""

    SPECIALS = ('<pad>', '<bos>', '<eos>', '<unk>')

    def __init__(self, char2id: Dict[str, int] = None):
        self.char2id = dict(char2id) if char2id else {t: i for i, t in enumerate(self.SPECIALS)}
        self._rebuild()

    def _rebuild(self):
        self.id2char = {int(v): k for k, v in self.char2id.items()}
        self.pad_id = self.char2id.get('<pad>', 0)
        self.bos_id = self.char2id.get('<bos>', 1)
        self.eos_id = self.char2id.get('<eos>', 2)
        self.unk_id = self.char2id.get('<unk>', 3)

    def add_chars(self, chars: Sequence[str]):
        for char in chars:
            if char not in self.char2id:
                self.char2id[char] = len(self.char2id)
        self._rebuild()

    def encode(self, text: str) -> List[int]:
        """文本 -> ID 序列"""
        return [self.char2id.get(c, self.unk_id) for c in text]

    @property
    def vocab_size(self) -> int:
        return len(self.char2id)

    def save(self, path: str):
        with open(path, 'wb') as f:
            f.write(orjson.dumps({'char2id': self.char2id}))

    @classmethod
    def load(cls, path: str) -> 'SLMVocab':
        with open(path, 'rb') as f:
            data = orjson.loads(f.read())
        return cls(data['char2id'])


def is_cjk(char: str) -> bool:
    code = ord(char)
    return 0x3400 <= code <= 0x9FFF or 0xF900 <= code <= 0xFAFF


def build_syllable_index(vocab: SLMVocab) -> Dict[str, List[int]]:
    """音节 → 读音匹配的字 ID 列表（含多音字的全部读音）"""
    index: Dict[str, set] = defaultdict(set)
    for char, idx in vocab.char2id.items():
        if len(char) != 1 or not is_cjk(char):
            continue
        readings = pinyin(char, style=Style.NORMAL, heteronym=True, errors='ignore')
        if not readings:
            continue
        for reading in readings[0]:
            reading = reading.replace('ü', 'v')
            index[reading].add(int(idx))
            # lve / nve 同时登记 lue / nue 拼写
            if reading in ('lve', 'nve'):
                index[reading[0] + 'ue'].add(int(idx))
    return {syl: sorted(ids) for syl, ids in index.items()}


def save_checkpoint(model: SLModel, vocab: SLMVocab, path: str):
    """保存模型（配置、权重、字表写在同一个文件里）"""
    torch.save({
        'config': asdict(model.config),
        'model_state_dict': model.state_dict(),
        'vocab': vocab.char2id,
    }, path)


class SLMPredictor:
    """
    SLM 预测后端

    按音节逐步扩展，每一步只允许读音与该音节一致的字，
    用语言模型打分做 Beam Search。
    """

    FALLBACK_PENALTY = -10.0  # 音节没有可用汉字时，原样保留拼音的惩罚

    def __init__(
        self,
        model: SLModel,
        vocab: SLMVocab,
        device: torch.device = None,
        beam_width: int = 5,
        max_syllables: int = 8,
        model_path: str = "",
    ):
        self.device = device or next(model.parameters()).device
        self.model = model.to(self.device)
        self.model.eval()
        self.vocab = vocab
        self.beam_width = beam_width
        self.max_syllables = max_syllables
        self.model_path = model_path
        self._syllable_index = build_syllable_index(vocab)
        self._cjk_ids = sorted(
            int(idx) for char, idx in vocab.char2id.items() if len(char) == 1 and is_cjk(char)
        )

    @classmethod
    def load(cls, model_path: str, device: str = None, **kwargs) -> 'SLMPredictor':
        """
        从 checkpoint 加载

        字表优先取 checkpoint['vocab']，否则读取同目录下的 vocab.json。
        """
        device = torch.device(device or ('cuda' if torch.cuda.is_available() else 'cpu'))
        checkpoint = torch.load(model_path, map_location=device, weights_only=False)

        config = checkpoint['config']
        if isinstance(config, dict):
            config = SLMConfig(**config)

        if checkpoint.get('vocab'):
            vocab = SLMVocab(checkpoint['vocab'])
        else:
            vocab = SLMVocab.load(os.path.join(os.path.dirname(model_path), 'vocab.json'))

        model = SLModel(config)
        model.load_state_dict(checkpoint['model_state_dict'])
        return cls(model, vocab, device, model_path=model_path, **kwargs)

    @property
    def num_parameters(self) -> int:
        return sum(p.numel() for p in self.model.parameters())

    def describe(self) -> str:
        return (f"SLM {os.path.basename(self.model_path) or '<memory>'} "
                f"({self.num_parameters:,} 参数, 字表 {self.vocab.vocab_size}, 设备 {self.device})")

    def close(self):
        self.model = self.model.cpu()

    @torch.no_grad()
    def generate(self, syllables: Sequence[str], context: str = "", num_return: int = 5) -> List[str]:
        """
        生成候选文本

        Args:
            syllables: 拼音音节序列，如 ["ni", "hao"]
            context: 已上屏的上文
            num_return: 返回数量

        Returns:
            按得分降序的生成文本
        """
        limit = min(self.max_syllables, self.model.config.max_len - 1)
        syllables = list(syllables)[:limit]
        if not syllables or num_return <= 0:
            return []

        # 上文截断，给生成留出位置
        room = self.model.config.max_len - 1 - len(syllables)
        context_ids = self.vocab.encode(context)[-room:] if room > 0 and context else []
        beams: List[Tuple[List[int], float, str]] = [([self.vocab.bos_id] + context_ids, 0.0, "")]

        for syllable in syllables:
            allowed = self._syllable_index.get(syllable)
            if not allowed:
                beams = [(ids, score + self.FALLBACK_PENALTY, text + syllable)
                         for ids, score, text in beams]
                continue

            # 同一步的所有路径长度相同，可以直接拼成一个 batch
            input_ids = torch.tensor([ids for ids, _, _ in beams], dtype=torch.long, device=self.device)
            log_probs = self.model.next_token_log_probs(input_ids)
            allowed_t = torch.tensor(allowed, dtype=torch.long, device=self.device)
            k = min(self.beam_width, len(allowed))
            top_v, top_i = log_probs.index_select(1, allowed_t).topk(k, dim=-1)

            expanded = []
            for b, (ids, score, text) in enumerate(beams):
                for value, pos in zip(top_v[b].tolist(), top_i[b].tolist()):
                    token = allowed[pos]
                    expanded.append((ids + [token], score + value, text + self.vocab.id2char[token]))

            expanded.sort(key=lambda x: x[1], reverse=True)
            beams = expanded[:self.beam_width]

        return [text for _, _, text in beams[:num_return]]

    @torch.no_grad()
    def continue_text(self, context: str, num_return: int = 5, max_new_chars: int = 4) -> List[str]:
        """
        不受拼音约束地续写上文

        每一步只在汉字和 <eos> 中选择，遇到 <eos> 的路径提前结束。

        Returns:
            续写部分（不含上文），按平均对数概率降序
        """
        if num_return <= 0 or max_new_chars <= 0 or not self._cjk_ids:
            return []
        max_new_chars = min(max_new_chars, self.model.config.max_len - 1)

        room = self.model.config.max_len - 1 - max_new_chars
        context_ids = self.vocab.encode(context)[-room:] if room > 0 and context else []
        allowed = self._cjk_ids + [self.vocab.eos_id]
        allowed_t = torch.tensor(allowed, dtype=torch.long, device=self.device)
        k = min(self.beam_width, len(allowed))

        beams: List[Tuple[List[int], float, str]] = [([self.vocab.bos_id] + context_ids, 0.0, "")]
        finished: List[Tuple[float, str]] = []

        for _ in range(max_new_chars):
            if not beams:
                break
            input_ids = torch.tensor([ids for ids, _, _ in beams], dtype=torch.long, device=self.device)
            log_probs = self.model.next_token_log_probs(input_ids)
            top_v, top_i = log_probs.index_select(1, allowed_t).topk(k, dim=-1)

            expanded = []
            for b, (ids, score, text) in enumerate(beams):
                for value, pos in zip(top_v[b].tolist(), top_i[b].tolist()):
                    token = allowed[pos]
                    if token == self.vocab.eos_id:
                        if text:
                            finished.append((score + value, text))
                    else:
                        expanded.append((ids + [token], score + value, text + self.vocab.id2char[token]))

            expanded.sort(key=lambda x: x[1], reverse=True)
            beams = expanded[:self.beam_width]

        finished.extend((score, text) for _, score, text in beams)
        finished.sort(key=lambda x: x[0] / len(x[1]), reverse=True)

        results = []
        for _, text in finished:
            if text not in results:
                results.append(text)
            if len(results) >= num_return:
                break
        return results

    @torch.no_grad()
    def perplexities(self, texts: Sequence[str], context: str = "") -> List[float]:
        """
        在上文条件下计算每段文本的困惑度（只统计文本本身的字）

        空文本为 inf。
        """
        if not texts:
            return []
        limit = self.model.config.max_len
        context_ids = self.vocab.encode(context) if context else []

        rows, masks = [], []
        for text in texts:
            text_ids = self.vocab.encode(text)[:limit - 1]
            room = limit - 1 - len(text_ids)
            prefix = [self.vocab.bos_id] + (context_ids[-room:] if room > 0 else [])
            ids = prefix + text_ids
            rows.append(ids)
            # 目标位置 i 对应 ids[i + 1]，上文部分不计入
            masks.append([i + 1 >= len(prefix) for i in range(len(ids) - 1)])

        width = max(len(ids) for ids in rows)
        if width < 2:
            return [float('inf')] * len(texts)
        pad = self.vocab.pad_id
        input_ids = torch.tensor(
            [ids + [pad] * (width - len(ids)) for ids in rows], dtype=torch.long, device=self.device
        )
        target_mask = torch.tensor(
            [mask + [False] * (width - 1 - len(mask)) for mask in masks], dtype=torch.bool, device=self.device
        )
        return self.model.compute_perplexity(input_ids, target_mask).tolist()
