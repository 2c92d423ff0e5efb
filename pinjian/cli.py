"""
PinJian 命令行工具
"""

import argparse
import dataclasses
import sys

from pinjian.engine.logging import get_cli_logger

logger = get_cli_logger()


def _build_config(args):
    from pinjian.engine import EngineConfig, load_config

    config = load_config(args.config) if args.config else EngineConfig()
    overrides = {}
    if args.db:
        overrides['dictionary_path'] = args.db
    if args.model:
        overrides['model_path'] = args.model
    if args.no_predict:
        overrides['enable_prediction'] = False
    return dataclasses.replace(config, **overrides) if overrides else config


def _print_candidates(candidates, limit=None):
    for i, c in enumerate(candidates[:limit], 1):
        tag = " [预测]" if c.is_prediction else ""
        print(f"{i}. {c.text} ({c.romanization}) {c.score:.3f}{tag}")


def _cmd_query(args) -> int:
    from pinjian.engine import InputEvent, PinyinBuffer, create_engine

    config = _build_config(args)
    with create_engine(config) as engine:
        for ch in PinyinBuffer.normalize(args.pinyin):
            if not engine.process_input(InputEvent.key(ch)).handled:
                logger.warning(f"⚠ 忽略无法组成拼音的字母: {ch}")
        engine.wait_for_predictions(timeout=5)

        print(f"拼音: {engine.get_composition()}")
        _print_candidates(engine.get_candidates(), args.top_k)
    return 0


def _cmd_type(args) -> int:
    from pinjian.engine import InputEvent, create_engine

    config = _build_config(args)
    with create_engine(config) as engine:
        engine.set_commit_callback(lambda text: print(f"上屏: {text}"))
        engine.set_state_change_callback(lambda state: print(f"状态: {state.value}"))
        if args.verbose:
            engine.set_candidate_callback(
                lambda cands: print("候选: " + " ".join(f"{i}.{c.text}" for i, c in enumerate(cands, 1)))
            )

        for ch in args.keys:
            engine.process_input(InputEvent.key(ch))
        engine.wait_for_predictions(timeout=5)

        if engine.get_composition():
            print(f"拼音: {engine.get_composition()}")
            _print_candidates(engine.get_candidates())
    return 0


def _cmd_import(args) -> int:
    from pinjian.engine import DictionaryStore

    with DictionaryStore(_build_config(args).dictionary_path) as store:
        count = store.import_dictionary(args.file, args.format, user_words=not args.system)
    print(f"导入 {count} 个词")
    return 0 if count else 1


def _cmd_export(args) -> int:
    from pinjian.engine import DictionaryStore

    with DictionaryStore(_build_config(args).dictionary_path) as store:
        count = store.export_user_dictionary(args.file, args.format)
    print(f"导出 {count} 个用户词")
    return 0


def _cmd_cleanup(args) -> int:
    from pinjian.engine import DictionaryStore

    with DictionaryStore(_build_config(args).dictionary_path) as store:
        count = store.cleanup_low_frequency_words(args.min_frequency)
    print(f"清理 {count} 个低频用户词")
    return 0


def _cmd_stats(args) -> int:
    from pinjian.engine import DictionaryStore

    with DictionaryStore(_build_config(args).dictionary_path) as store:
        stats = store.get_statistics()
    print(f"总词数:   {stats.get('total_words', 0)}")
    print(f"用户词:   {stats.get('user_words', 0)}")
    print(f"系统词:   {stats.get('system_words', 0)}")
    print(f"平均词频: {stats.get('avg_frequency', 0.0)}")
    return 0


def _cmd_version(args) -> int:
    from pinjian import __version__
    print(f"PinJian v{__version__}")
    return 0


def main(argv=None) -> int:
    """命令行入口"""
    from pinjian.engine import DictionaryOpenError

    parser = argparse.ArgumentParser(
        prog="pinjian",
        description="PinJian - 拼音输入法组合引擎",
    )
    parser.add_argument("--config", help="JSON 配置文件")
    parser.add_argument("--db", help="词库路径 (默认: data/dictionary.db)")
    parser.add_argument("--model", help="预测模型路径 (默认: models/slm/best.pt)")
    parser.add_argument("--no-predict", action="store_true", help="关闭模型预测")

    subparsers = parser.add_subparsers(dest="command", help="可用命令")

    # query 命令
    query_parser = subparsers.add_parser("query", help="查询拼音候选")
    query_parser.add_argument("pinyin", help="拼音输入，如 nihao")
    query_parser.add_argument("-k", "--top-k", type=int, default=9, help="显示候选数量")
    query_parser.set_defaults(func=_cmd_query)

    # type 命令
    type_parser = subparsers.add_parser("type", help="模拟按键输入，如 nihao1")
    type_parser.add_argument("keys", help="按键序列（字母输入拼音，数字选择候选）")
    type_parser.add_argument("-v", "--verbose", action="store_true", help="打印每次候选变化")
    type_parser.set_defaults(func=_cmd_type)

    # import 命令
    import_parser = subparsers.add_parser("import", help="导入词库文件")
    import_parser.add_argument("file", help="词库文件")
    import_parser.add_argument("--format", choices=["txt", "csv", "json"], default="txt")
    import_parser.add_argument("--system", action="store_true", help="作为系统词导入")
    import_parser.set_defaults(func=_cmd_import)

    # export 命令
    export_parser = subparsers.add_parser("export", help="导出用户词库")
    export_parser.add_argument("file", help="输出文件")
    export_parser.add_argument("--format", choices=["txt", "csv", "json"], default="txt")
    export_parser.set_defaults(func=_cmd_export)

    # cleanup 命令
    cleanup_parser = subparsers.add_parser("cleanup", help="清理低频用户词")
    cleanup_parser.add_argument("--min-frequency", type=int, default=1, help="低于该频率的用户词被删除")
    cleanup_parser.set_defaults(func=_cmd_cleanup)

    # stats 命令
    stats_parser = subparsers.add_parser("stats", help="词库统计")
    stats_parser.set_defaults(func=_cmd_stats)

    # version 命令
    version_parser = subparsers.add_parser("version", help="显示版本")
    version_parser.set_defaults(func=_cmd_version)

    args = parser.parse_args(argv)
    if not getattr(args, "func", None):
        parser.print_help()
        return 1

    try:
        return args.func(args)
    except DictionaryOpenError as e:
        logger.error(str(e))
        print(f"错误: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
