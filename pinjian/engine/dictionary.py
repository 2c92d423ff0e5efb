"""
词库模块

基于 SQLite 的持久化词表，提供：
1. 拼音前缀 / 模糊查询，按词频和词长排序并打分
2. 用户词的增删改与频率学习
3. 词库的批量导入导出（txt / csv / json）
"""

import csv
import os
import sqlite3
import threading
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import orjson

from .config import Candidate
from .logging import get_dict_logger

logger = get_dict_logger()


# 内置系统词汇 (词, 拼音, 频率)
BASE_WORDS: List[Tuple[str, str, int]] = [
    ("你好", "ni hao", 100),
    ("世界", "shi jie", 100),
    ("中国", "zhong guo", 100),
    ("输入法", "shu ru fa", 100),
    ("计算机", "ji suan ji", 100),
    ("程序", "cheng xu", 100),
    ("软件", "ruan jian", 100),
    ("开发", "kai fa", 100),
    ("技术", "ji shu", 100),
    ("人工智能", "ren gong zhi neng", 100),
]

SUPPORTED_FORMATS = ('txt', 'csv', 'json')

# txt 格式中多音节拼音的分隔符（ni'hao）
SYLLABLE_SEPARATOR = "'"

# 与 idx_romanization_compact 的表达式保持一致，否则索引不生效
_COMPACT_SQL = "REPLACE(romanization, ' ', '')"

_SCHEMA = f"""
CREATE TABLE IF NOT EXISTS words (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    word TEXT NOT NULL,
    romanization TEXT NOT NULL,
    frequency INTEGER NOT NULL DEFAULT 1 CHECK (frequency >= 0),
    is_user_word INTEGER NOT NULL DEFAULT 0,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    UNIQUE(word, romanization)
);
CREATE INDEX IF NOT EXISTS idx_romanization ON words(romanization);
CREATE INDEX IF NOT EXISTS idx_romanization_compact ON words({_COMPACT_SQL});
CREATE INDEX IF NOT EXISTS idx_frequency ON words(frequency DESC);
"""

# 前缀查询写成区间 [key, key + _MAX_CHAR)：LIKE 'x%' 在默认的 BINARY 排序规则下用不上索引
_MAX_CHAR = '\U0010ffff'

_PREFIX_SEARCH_SQL = f"""
    SELECT word, romanization, frequency
    FROM words INDEXED BY idx_romanization_compact
    WHERE {_COMPACT_SQL} >= ? AND {_COMPACT_SQL} < ?
    ORDER BY frequency DESC, length(word) ASC
    LIMIT ?
"""


class DictionaryOpenError(RuntimeError):
    """词库无法打开或无法建表"""


@dataclass
class DictionaryEntry:
    """词库条目"""
    word: str
    romanization: str
    frequency: int
    is_user_word: bool
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


def normalize_romanization(romanization: str) -> str:
    """统一存储格式：小写，音节之间单个空格（ni'hao → ni hao）"""
    return ' '.join(romanization.lower().replace("'", ' ').split())


def compact_romanization(romanization: str) -> str:
    """去掉分隔符的紧凑形式（ni hao → nihao）"""
    return ''.join(romanization.lower().replace("'", ' ').split())


def calculate_score(word: str, word_romanization: str, frequency: int, query: str) -> float:
    """
    候选得分 = 频率分(0-50) + 词长分(0-20) + 拼音匹配分(0-30)

    匹配分：完全匹配 30，前缀匹配 20，包含匹配 10
    """
    score = min(50.0, frequency / 10.0)
    score += max(0.0, 20.0 - len(word))

    stored = compact_romanization(word_romanization)
    query = compact_romanization(query)
    if stored == query:
        score += 30.0
    elif stored.startswith(query):
        score += 20.0
    elif query in stored:
        score += 10.0

    return score


def _escape_like(text: str) -> str:
    return text.replace('\\', '\\\\').replace('%', '\\%').replace('_', '\\_')


class DictionaryStore:
    """
    词库存储

    打开/建表失败抛出 DictionaryOpenError；单次查询失败记录日志后
    返回空结果，保证打字过程不会因后端异常中断。
    写操作由内部锁串行化。
    """

    def __init__(
        self,
        db_path: str,
        system_words: Optional[Iterable[Tuple[str, str, int]]] = None,
    ):
        self.db_path = str(db_path)
        self._lock = threading.RLock()
        self._conn: Optional[sqlite3.Connection] = None

        logger.info(f"正在打开词库: {self.db_path}")
        try:
            if self.db_path != ':memory:':
                parent = os.path.dirname(os.path.abspath(self.db_path))
                os.makedirs(parent, exist_ok=True)
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            with self._conn:
                self._conn.executescript(_SCHEMA)
        except (sqlite3.Error, OSError) as e:
            logger.error(f"词库初始化失败: {e}")
            if self._conn is not None:
                self._conn.close()
                self._conn = None
            raise DictionaryOpenError(f"无法打开词库 {self.db_path}: {e}") from e

        self._load_system_words(BASE_WORDS if system_words is None else system_words)
        logger.info("✓ 词库初始化完成")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def close(self):
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def _load_system_words(self, words: Iterable[Tuple[str, str, int]]):
        """写入系统词汇（已存在则跳过）"""
        rows = [(w, normalize_romanization(r), int(f)) for w, r, f in words]
        if not rows:
            return
        try:
            with self._lock, self._conn:
                self._conn.executemany(
                    "INSERT OR IGNORE INTO words (word, romanization, frequency, is_user_word) "
                    "VALUES (?, ?, ?, 0)",
                    rows,
                )
        except sqlite3.Error as e:
            logger.warning(f"系统词库加载失败，继续使用现有词库: {e}")

    # ===== 查询 =====

    def _query(self, sql: str, params: Sequence) -> List[sqlite3.Row]:
        with self._lock:
            if self._conn is None:
                raise sqlite3.ProgrammingError("词库已关闭")
            return self._conn.execute(sql, params).fetchall()

    def _to_candidates(self, rows: List[sqlite3.Row], query: str) -> List[Candidate]:
        return [
            Candidate(
                text=row['word'],
                romanization=row['romanization'],
                score=calculate_score(row['word'], row['romanization'], row['frequency'], query),
                frequency=row['frequency'],
                is_prediction=False,
            )
            for row in rows
        ]

    def search_by_romanization(self, romanization: str, max_results: int = 10) -> List[Candidate]:
        """
        拼音查询：完全匹配或前缀匹配

        结果按频率降序、词长升序排列，每个候选附带得分。
        """
        key = compact_romanization(romanization)
        if not key or max_results <= 0:
            return []

        try:
            rows = self._query(_PREFIX_SEARCH_SQL, (key, key + _MAX_CHAR, max_results))
        except sqlite3.Error as e:
            logger.error(f"拼音查询失败 ({romanization}): {e}")
            return []
        return self._to_candidates(rows, key)

    def search_by_sequence(self, syllables: Sequence[str], max_results: int = 10) -> List[Candidate]:
        """拼音序列查询"""
        if not syllables:
            return []
        return self.search_by_romanization(' '.join(syllables), max_results)

    def fuzzy_search(self, partial: str, max_results: int = 10) -> List[Candidate]:
        """模糊查询：拼音中包含 partial 即匹配"""
        key = compact_romanization(partial)
        if not key or max_results <= 0:
            return []

        sql = f"""
            SELECT word, romanization, frequency
            FROM words
            WHERE {_COMPACT_SQL} LIKE ? ESCAPE '\\'
            ORDER BY frequency DESC, length(word) ASC
            LIMIT ?
        """
        try:
            rows = self._query(sql, ('%' + _escape_like(key) + '%', max_results))
        except sqlite3.Error as e:
            logger.error(f"模糊查询失败 ({partial}): {e}")
            return []
        return self._to_candidates(rows, key)

    def get_word_info(self, word: str, romanization: str) -> Optional[DictionaryEntry]:
        """获取词汇详细信息，不存在返回 None"""
        try:
            rows = self._query(
                "SELECT word, romanization, frequency, is_user_word, created_at, updated_at "
                "FROM words WHERE word = ? AND romanization = ?",
                (word, normalize_romanization(romanization)),
            )
        except sqlite3.Error as e:
            logger.error(f"词汇信息查询失败 ({word}): {e}")
            return None
        if not rows:
            return None
        row = rows[0]
        return DictionaryEntry(
            word=row['word'],
            romanization=row['romanization'],
            frequency=row['frequency'],
            is_user_word=bool(row['is_user_word']),
            created_at=row['created_at'],
            updated_at=row['updated_at'],
        )

    # ===== 更新 =====

    def _execute(self, sql: str, params: Sequence) -> int:
        """执行写操作，返回受影响行数"""
        with self._lock:
            if self._conn is None:
                raise sqlite3.ProgrammingError("词库已关闭")
            with self._conn:
                return self._conn.execute(sql, params).rowcount

    def add_user_word(self, word: str, romanization: str, frequency: int = 1) -> bool:
        """添加用户词；(词, 拼音) 已存在时更新频率并标记为用户词"""
        romanization = normalize_romanization(romanization)
        if not word or not romanization or frequency < 0:
            return False

        try:
            self._execute(
                """
                INSERT INTO words (word, romanization, frequency, is_user_word)
                VALUES (?, ?, ?, 1)
                ON CONFLICT(word, romanization) DO UPDATE SET
                    frequency = excluded.frequency,
                    is_user_word = 1,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (word, romanization, int(frequency)),
            )
        except sqlite3.Error as e:
            logger.error(f"添加用户词失败 ({word}): {e}")
            return False

        logger.debug(f"添加用户词: {word} ({romanization})")
        return True

    def update_word_frequency(self, word: str, romanization: str) -> bool:
        """词频 +1；条目不存在时什么也不做"""
        try:
            self._execute(
                "UPDATE words SET frequency = frequency + 1, updated_at = CURRENT_TIMESTAMP "
                "WHERE word = ? AND romanization = ?",
                (word, normalize_romanization(romanization)),
            )
        except sqlite3.Error as e:
            logger.error(f"更新词频失败 ({word}): {e}")
            return False
        return True

    def remove_user_word(self, word: str, romanization: str) -> bool:
        """删除用户词，系统词不受影响；返回是否删除了条目"""
        try:
            removed = self._execute(
                "DELETE FROM words WHERE word = ? AND romanization = ? AND is_user_word = 1",
                (word, normalize_romanization(romanization)),
            )
        except sqlite3.Error as e:
            logger.error(f"删除用户词失败 ({word}): {e}")
            return False
        return removed > 0

    def learn_user_input(self, text: str, romanization_sequence: Sequence[str]) -> bool:
        """把整段上屏文本作为用户词学习，已存在则频率 +1"""
        if not text or not romanization_sequence:
            return False
        romanization = normalize_romanization(' '.join(romanization_sequence))

        try:
            self._execute(
                """
                INSERT INTO words (word, romanization, frequency, is_user_word)
                VALUES (?, ?, 1, 1)
                ON CONFLICT(word, romanization) DO UPDATE SET
                    frequency = frequency + 1,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (text, romanization),
            )
        except sqlite3.Error as e:
            logger.error(f"学习用户输入失败 ({text}): {e}")
            return False

        logger.debug(f"学习用户输入: {text} ({romanization})")
        return True

    def cleanup_low_frequency_words(self, min_frequency: int = 1) -> int:
        """清理频率低于阈值的用户词，返回清理数量"""
        try:
            deleted = self._execute(
                "DELETE FROM words WHERE is_user_word = 1 AND frequency < ?",
                (int(min_frequency),),
            )
        except sqlite3.Error as e:
            logger.error(f"清理低频词失败: {e}")
            return 0

        logger.info(f"已清理 {deleted} 个低频用户词")
        return deleted

    def get_statistics(self) -> Dict:
        """词库统计信息"""
        try:
            rows = self._query(
                """
                SELECT
                    COUNT(*) AS total_words,
                    COUNT(CASE WHEN is_user_word = 1 THEN 1 END) AS user_words,
                    COUNT(CASE WHEN is_user_word = 0 THEN 1 END) AS system_words,
                    AVG(frequency) AS avg_frequency
                FROM words
                """,
                (),
            )
        except sqlite3.Error as e:
            logger.error(f"统计信息查询失败: {e}")
            return {}
        row = rows[0]
        return {
            'total_words': row['total_words'],
            'user_words': row['user_words'],
            'system_words': row['system_words'],
            'avg_frequency': round(row['avg_frequency'] or 0.0, 2),
        }

    # ===== 导入导出 =====

    def import_dictionary(self, file_path: str, format: str = 'txt', user_words: bool = True) -> int:
        """
        导入词库文件

        Args:
            file_path: 词库文件路径
            format: 'txt'（每行 "词 拼音 频率"，多音节拼音用 ' 连接）、'csv' 或 'json'
            user_words: 是否作为用户词导入；False 时作为系统词

        Returns:
            导入条目数
        """
        if format not in SUPPORTED_FORMATS:
            logger.error(f"不支持的词库格式: {format}")
            return 0

        try:
            entries = list(self._read_entries(file_path, format))
        except (OSError, ValueError, KeyError, TypeError, csv.Error) as e:
            logger.error(f"读取词库文件失败 ({file_path}): {e}")
            return 0

        rows = [
            (word, normalize_romanization(rom), freq)
            for word, rom, freq in entries
            if word and normalize_romanization(rom) and freq >= 0
        ]
        if not rows:
            logger.warning(f"词库文件中没有可导入的条目: {file_path}")
            return 0

        if user_words:
            sql = """
                INSERT INTO words (word, romanization, frequency, is_user_word)
                VALUES (?, ?, ?, 1)
                ON CONFLICT(word, romanization) DO UPDATE SET
                    frequency = excluded.frequency,
                    is_user_word = 1,
                    updated_at = CURRENT_TIMESTAMP
            """
        else:
            sql = """
                INSERT INTO words (word, romanization, frequency, is_user_word)
                VALUES (?, ?, ?, 0)
                ON CONFLICT(word, romanization) DO UPDATE SET
                    frequency = excluded.frequency,
                    updated_at = CURRENT_TIMESTAMP
            """

        try:
            with self._lock:
                if self._conn is None:
                    raise sqlite3.ProgrammingError("词库已关闭")
                with self._conn:
                    self._conn.executemany(sql, rows)
        except sqlite3.Error as e:
            logger.error(f"导入词库失败 ({file_path}): {e}")
            return 0

        logger.info(f"从 {file_path} 导入 {len(rows)} 个词")
        return len(rows)

    def _read_entries(self, file_path: str, format: str) -> Iterable[Tuple[str, str, int]]:
        if format == 'json':
            with open(file_path, 'rb') as f:
                data = orjson.loads(f.read())
            for item in data:
                yield item['word'], item['romanization'], int(item.get('frequency', 1))

        elif format == 'csv':
            with open(file_path, 'r', encoding='utf-8', newline='') as f:
                for row in csv.reader(f):
                    if len(row) < 3 or row[0].startswith('#') or row[0] == 'word':
                        continue
                    try:
                        yield row[0].strip(), row[1], int(row[2])
                    except ValueError:
                        continue

        else:
            with open(file_path, 'r', encoding='utf-8') as f:
                for line in f:
                    parts = line.split()
                    if len(parts) < 3 or parts[0].startswith('#'):
                        continue
                    try:
                        yield parts[0], parts[1], int(parts[2])
                    except ValueError:
                        continue

    def export_user_dictionary(self, file_path: str, format: str = 'txt') -> int:
        """导出用户词库，返回导出条目数"""
        if format not in SUPPORTED_FORMATS:
            logger.error(f"不支持的导出格式: {format}")
            return 0

        try:
            rows = self._query(
                "SELECT word, romanization, frequency FROM words "
                "WHERE is_user_word = 1 ORDER BY frequency DESC, word ASC",
                (),
            )
        except sqlite3.Error as e:
            logger.error(f"导出用户词库失败: {e}")
            return 0

        try:
            if format == 'json':
                data = [
                    {'word': r['word'], 'romanization': r['romanization'], 'frequency': r['frequency']}
                    for r in rows
                ]
                with open(file_path, 'wb') as f:
                    f.write(orjson.dumps(data, option=orjson.OPT_INDENT_2))
            elif format == 'csv':
                with open(file_path, 'w', encoding='utf-8', newline='') as f:
                    writer = csv.writer(f)
                    writer.writerow(['word', 'romanization', 'frequency'])
                    for r in rows:
                        writer.writerow([r['word'], r['romanization'], r['frequency']])
            else:
                with open(file_path, 'w', encoding='utf-8') as f:
                    for r in rows:
                        f.write(f"{r['word']} {r['romanization'].replace(' ', SYLLABLE_SEPARATOR)} {r['frequency']}\n")
        except OSError as e:
            logger.error(f"无法写入导出文件 ({file_path}): {e}")
            return 0

        logger.info(f"导出 {len(rows)} 个用户词到 {file_path}")
        return len(rows)
