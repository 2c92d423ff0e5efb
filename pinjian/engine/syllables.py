"""
标准拼音音节表

无声调音节，ü 统一写作 v（lv / nv / lve / nve），
同时保留 lue / nue 两种常见拼写。
"""

from typing import FrozenSet, Dict, Tuple


STANDARD_SYLLABLES: FrozenSet[str] = frozenset({
    # 零声母
    'a', 'o', 'e', 'ai', 'ei', 'ao', 'ou', 'an', 'en', 'ang', 'eng', 'er',

    # b
    'ba', 'bo', 'bi', 'bu', 'bai', 'bei', 'bao', 'ban', 'ben', 'bang', 'beng',
    'bie', 'biao', 'bian', 'bin', 'bing',

    # p
    'pa', 'po', 'pi', 'pu', 'pai', 'pei', 'pao', 'pou', 'pan', 'pen', 'pang', 'peng',
    'pie', 'piao', 'pian', 'pin', 'ping',

    # m
    'ma', 'mo', 'me', 'mi', 'mu', 'mai', 'mei', 'mao', 'mou', 'man', 'men', 'mang', 'meng',
    'mie', 'miao', 'miu', 'mian', 'min', 'ming',

    # f
    'fa', 'fo', 'fu', 'fei', 'fou', 'fan', 'fen', 'fang', 'feng',

    # d
    'da', 'de', 'di', 'du', 'dai', 'dei', 'dao', 'dou', 'dan', 'den', 'dang', 'deng', 'dong',
    'die', 'diao', 'diu', 'dian', 'ding', 'duo', 'dui', 'duan', 'dun',

    # t
    'ta', 'te', 'ti', 'tu', 'tai', 'tao', 'tou', 'tan', 'tang', 'teng', 'tong',
    'tie', 'tiao', 'tian', 'ting', 'tuo', 'tui', 'tuan', 'tun',

    # n
    'na', 'ne', 'ni', 'nu', 'nv', 'nai', 'nei', 'nao', 'nou', 'nan', 'nen', 'nang', 'neng', 'nong',
    'nie', 'niao', 'niu', 'nian', 'nin', 'niang', 'ning', 'nuo', 'nuan', 'nve', 'nue',

    # l
    'la', 'le', 'li', 'lu', 'lv', 'lai', 'lei', 'lao', 'lou', 'lan', 'lang', 'leng', 'long',
    'lia', 'lie', 'liao', 'liu', 'lian', 'lin', 'liang', 'ling', 'luo', 'luan', 'lun', 'lve', 'lue',

    # g
    'ga', 'ge', 'gu', 'gai', 'gei', 'gao', 'gou', 'gan', 'gen', 'gang', 'geng', 'gong',
    'gua', 'guo', 'guai', 'gui', 'guan', 'gun', 'guang',

    # k
    'ka', 'ke', 'ku', 'kai', 'kao', 'kou', 'kan', 'ken', 'kang', 'keng', 'kong',
    'kua', 'kuo', 'kuai', 'kui', 'kuan', 'kun', 'kuang',

    # h
    'ha', 'he', 'hu', 'hai', 'hei', 'hao', 'hou', 'han', 'hen', 'hang', 'heng', 'hong',
    'hua', 'huo', 'huai', 'hui', 'huan', 'hun', 'huang',

    # j
    'ji', 'jia', 'jie', 'jiao', 'jiu', 'jian', 'jin', 'jiang', 'jing', 'jiong',
    'ju', 'jue', 'juan', 'jun',

    # q
    'qi', 'qia', 'qie', 'qiao', 'qiu', 'qian', 'qin', 'qiang', 'qing', 'qiong',
    'qu', 'que', 'quan', 'qun',

    # x
    'xi', 'xia', 'xie', 'xiao', 'xiu', 'xian', 'xin', 'xiang', 'xing', 'xiong',
    'xu', 'xue', 'xuan', 'xun',

    # zh
    'zha', 'zhe', 'zhi', 'zhu', 'zhai', 'zhei', 'zhao', 'zhou', 'zhan', 'zhen', 'zhang', 'zheng', 'zhong',
    'zhua', 'zhuo', 'zhuai', 'zhui', 'zhuan', 'zhun', 'zhuang',

    # ch
    'cha', 'che', 'chi', 'chu', 'chai', 'chao', 'chou', 'chan', 'chen', 'chang', 'cheng', 'chong',
    'chuo', 'chuai', 'chui', 'chuan', 'chun', 'chuang',

    # sh
    'sha', 'she', 'shi', 'shu', 'shai', 'shei', 'shao', 'shou', 'shan', 'shen', 'shang', 'sheng',
    'shua', 'shuo', 'shuai', 'shui', 'shuan', 'shun', 'shuang',

    # r
    'ri', 're', 'ru', 'rao', 'rou', 'ran', 'ren', 'rang', 'reng', 'rong',
    'ruo', 'rui', 'ruan', 'run',

    # z
    'za', 'ze', 'zi', 'zu', 'zai', 'zei', 'zao', 'zou', 'zan', 'zen', 'zang', 'zeng', 'zong',
    'zuo', 'zui', 'zuan', 'zun',

    # c
    'ca', 'ce', 'ci', 'cu', 'cai', 'cao', 'cou', 'can', 'cen', 'cang', 'ceng', 'cong',
    'cuo', 'cui', 'cuan', 'cun',

    # s
    'sa', 'se', 'si', 'su', 'sai', 'sao', 'sou', 'san', 'sen', 'sang', 'seng', 'song',
    'suo', 'sui', 'suan', 'sun',

    # y
    'ya', 'yo', 'ye', 'yi', 'yu', 'yao', 'you', 'yan', 'yin', 'yang', 'ying', 'yong',
    'yue', 'yuan', 'yun',

    # w
    'wa', 'wo', 'wu', 'wai', 'wei', 'wan', 'wen', 'wang', 'weng',
})


# 声调字符映射表（字符音标 → (无调字母, 声调)）
TONE_MARKS: Dict[str, Tuple[str, int]] = {
    'ā': ('a', 1), 'á': ('a', 2), 'ǎ': ('a', 3), 'à': ('a', 4),
    'ē': ('e', 1), 'é': ('e', 2), 'ě': ('e', 3), 'è': ('e', 4),
    'ī': ('i', 1), 'í': ('i', 2), 'ǐ': ('i', 3), 'ì': ('i', 4),
    'ō': ('o', 1), 'ó': ('o', 2), 'ǒ': ('o', 3), 'ò': ('o', 4),
    'ū': ('u', 1), 'ú': ('u', 2), 'ǔ': ('u', 3), 'ù': ('u', 4),
    'ǖ': ('v', 1), 'ǘ': ('v', 2), 'ǚ': ('v', 3), 'ǜ': ('v', 4),
    'ü': ('v', 0), 'ń': ('n', 2), 'ň': ('n', 3), 'ǹ': ('n', 4),
}
