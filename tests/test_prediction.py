"""
预测适配器测试：降级、打分、阈值、超时、模型切换。
"""
import os
import tempfile
import time
import unittest

from pinjian.engine.buffer import PinyinBuffer
from pinjian.engine.prediction import PredictionAdapter, extract_cjk_runs
from pinjian.engine.memory import UserPatternMemory


class FakeBackend:
    """记录调用参数的假推理后端"""

    def __init__(self, outputs=None, delay=0.0, error=None, name='fake', continuations=None, ppl=None):
        self.outputs = list(outputs or [])
        self.continuations = list(continuations or [])
        self.ppl = dict(ppl or {})
        self.delay = delay
        self.error = error
        self.name = name
        self.calls = []
        self.closed = False

    def generate(self, syllables, context, num_return):
        self.calls.append((list(syllables), context, num_return))
        if self.delay:
            time.sleep(self.delay)
        if self.error:
            raise self.error
        return list(self.outputs)

    def continue_text(self, context, num_return, max_new_chars):
        self.calls.append(('continue', context, num_return, max_new_chars))
        if self.delay:
            time.sleep(self.delay)
        if self.error:
            raise self.error
        return list(self.continuations)

    def perplexities(self, texts, context):
        self.calls.append(('perplexity', list(texts), context))
        if self.error:
            raise self.error
        return [self.ppl.get(text, float('inf')) for text in texts]

    def describe(self):
        return self.name

    def close(self):
        self.closed = True


class TestExtractRuns(unittest.TestCase):
    """测试生成文本切分为汉字片段。"""

    def test_split_and_dedupe(self):
        """测试按非汉字切开并去重，保持首次出现顺序。"""
        runs = extract_cjk_runs(['你好ma世界', '你好', 'abc', '', '﨑玉'])
        self.assertEqual(runs, ['你好', '世界', '﨑玉'])

    def test_extension_a(self):
        """测试扩展 A 区汉字。"""
        self.assertEqual(extract_cjk_runs(['㐀㐁 x']), ['㐀㐁'])


class TestUserPatternMemory(unittest.TestCase):
    """测试用户选择记忆。"""

    def test_add_and_contains(self):
        """测试记录与查询。"""
        memory = UserPatternMemory()
        memory.add('nihao', '你好')
        memory.add('nihao', '你好')
        memory.add('nihao', '拟好')
        self.assertEqual(memory.get('nihao'), ['你好', '拟好'])
        self.assertTrue(memory.contains('nihao', '拟好'))
        self.assertFalse(memory.contains('ni', '你好'))

    def test_capacity(self):
        """测试超出容量时淘汰最早的输入。"""
        memory = UserPatternMemory(capacity=2)
        memory.add('a', '啊')
        memory.add('b', '不')
        memory.add('c', '从')
        self.assertEqual(len(memory), 2)
        self.assertNotIn('a', memory)
        self.assertIn('c', memory)

    def test_texts_per_key_capped(self):
        """测试同一输入下的文本超出上限时淘汰最早的文本。"""
        memory = UserPatternMemory(max_texts_per_key=2)
        for text in ('你好', '拟好', '泥好'):
            memory.add('nihao', text)
        self.assertEqual(memory.get('nihao'), ['拟好', '泥好'])
        self.assertFalse(memory.contains('nihao', '你好'))
        self.assertEqual(len(memory), 1)

    def test_repeated_text_not_counted(self):
        """测试重复记录同一文本不占用上限。"""
        memory = UserPatternMemory(max_texts_per_key=2)
        for _ in range(5):
            memory.add('nihao', '你好')
        memory.add('nihao', '拟好')
        self.assertEqual(memory.get('nihao'), ['你好', '拟好'])


class TestUnavailable(unittest.TestCase):
    """测试没有模型时静默降级。"""

    def test_no_model(self):
        """测试未配置模型。"""
        adapter = PredictionAdapter()
        self.assertFalse(adapter.is_available())
        self.assertEqual(adapter.predict_from_romanization('nihao', '', 5), [])
        self.assertFalse(adapter.learn_user_pattern('nihao', '你好'))
        self.assertEqual(adapter.get_model_info(), '模型未加载')
        adapter.shutdown()

    def test_missing_model_file(self):
        """测试模型文件不存在时不调用加载器。"""
        calls = []
        adapter = PredictionAdapter(model_path='/nonexistent/best.pt', loader=calls.append)
        self.assertFalse(adapter.is_available())
        self.assertEqual(calls, [])

    def test_loader_failure(self):
        """测试加载失败时预测被禁用。"""
        def broken(path):
            raise RuntimeError('bad checkpoint')

        with tempfile.NamedTemporaryFile(suffix='.pt') as f:
            adapter = PredictionAdapter(model_path=f.name, loader=broken)
        self.assertFalse(adapter.is_available())

    def test_loader_success(self):
        """测试加载成功。"""
        backend = FakeBackend(name='tiny')
        with tempfile.NamedTemporaryFile(suffix='.pt') as f:
            adapter = PredictionAdapter(model_path=f.name, loader=lambda path: backend)
        self.assertTrue(adapter.is_available())
        self.assertEqual(adapter.get_model_info(), 'tiny')


class TestPredict(unittest.TestCase):
    """测试预测打分。"""

    def setUp(self):
        self.backend = FakeBackend(['你好世界', '你好', 'ni好'])
        self.adapter = PredictionAdapter(backend=self.backend)

    def test_backend_arguments(self):
        """测试后端收到切分后的音节。"""
        self.adapter.predict_from_romanization('nihao', '上文', 3)
        self.assertEqual(self.backend.calls, [(['ni', 'hao'], '上文', 3)])

    def test_injected_segmenter(self):
        """测试注入的切分器被沿用，后端收到它的切分结果。"""
        custom = PinyinBuffer(syllables={'nih', 'ao'})
        adapter = PredictionAdapter(backend=self.backend, segmenter=custom)
        self.assertIs(adapter.segmenter, custom)
        adapter.predict_from_romanization('nihao', '', 3)
        self.assertEqual(self.backend.calls, [(['nih', 'ao'], '', 3)])

    def test_base_and_context_bonus(self):
        """测试基础分 0.6，不在上下文中加 0.1。"""
        results = self.adapter.predict_from_romanization('nihao', '', 5)
        self.assertEqual([c.text for c in results], ['你好世界', '你好', '好'])
        for c in results:
            self.assertAlmostEqual(c.score, 0.7)
            self.assertTrue(c.is_prediction)
            self.assertEqual(c.romanization, 'nihao')

        results = self.adapter.predict_from_romanization('nihao', '我说你好', 5)
        scores = {c.text: c.score for c in results}
        self.assertAlmostEqual(scores['你好世界'], 0.7)
        self.assertAlmostEqual(scores['你好'], 0.6)

    def test_user_pattern_bonus(self):
        """测试用户选过的文本加 0.3，并排到最前。"""
        self.assertTrue(self.adapter.learn_user_pattern("ni'hao", '你好'))
        results = self.adapter.predict_from_romanization('nihao', '', 5)
        self.assertEqual(results[0].text, '你好')
        self.assertAlmostEqual(results[0].score, 1.0)

        # 不同输入不共享
        other = self.adapter.predict_from_romanization('ni', '', 5)
        self.assertAlmostEqual({c.text: c.score for c in other}['你好'], 0.7)

    def test_learn_from_syllable_list(self):
        """测试以音节列表记录选择。"""
        self.adapter.learn_user_pattern(['ni', 'hao'], '你好')
        self.assertTrue(self.adapter.patterns.contains('nihao', '你好'))

    def test_threshold_filters(self):
        """测试低于阈值的候选被丢弃。"""
        self.adapter.set_threshold(0.65)
        results = self.adapter.predict_from_romanization('nihao', '你好', 5)
        self.assertEqual([c.text for c in results], ['你好世界'])

    def test_threshold_clamped(self):
        """测试阈值被限制在 [0, 1]。"""
        self.adapter.set_threshold(1.5)
        self.assertEqual(self.adapter.get_threshold(), 1.0)
        self.adapter.set_threshold(-2)
        self.assertEqual(self.adapter.get_threshold(), 0.0)

    def test_max_predictions(self):
        """测试预测数量上限。"""
        self.assertEqual(len(self.adapter.predict_from_romanization('nihao', '', 2)), 2)
        self.assertEqual(self.adapter.predict_from_romanization('nihao', '', 0), [])
        self.assertEqual(self.adapter.predict_from_romanization('', '', 5), [])

    def test_backend_error(self):
        """测试后端异常降级为空结果。"""
        adapter = PredictionAdapter(backend=FakeBackend(error=RuntimeError('boom')))
        self.assertEqual(adapter.predict_from_romanization('nihao', '', 5), [])

    def test_timeout(self):
        """测试推理超时返回空结果，不阻塞调用方。"""
        adapter = PredictionAdapter(backend=FakeBackend(['你好'], delay=0.5), timeout_ms=50)
        start = time.perf_counter()
        self.assertEqual(adapter.predict_from_romanization('nihao', '', 5), [])
        self.assertLess(time.perf_counter() - start, 0.4)
        adapter.shutdown()


class TestPredictNext(unittest.TestCase):
    """测试上屏后的下一词预测。"""

    def setUp(self):
        self.backend = FakeBackend(
            continuations=['世界', '你好', '中国x人'],
            ppl={'世界': 2.0, '中国': 4.0, '人': 1.0},
        )
        self.adapter = PredictionAdapter(backend=self.backend)

    def test_scored_by_perplexity(self):
        """测试得分 0.6 + 0.1 + 0.3 / 困惑度，上文中已有的词被丢弃。"""
        results = self.adapter.predict_next('你好', 5)
        self.assertEqual([c.text for c in results], ['人', '世界', '中国'])
        self.assertAlmostEqual(results[0].score, 1.0)
        self.assertAlmostEqual(results[1].score, 0.85)
        self.assertAlmostEqual(results[2].score, 0.775)
        self.assertEqual(results[1].romanization, 'shi jie')
        self.assertTrue(all(c.is_prediction for c in results))

    def test_backend_arguments(self):
        """测试按上文续写，并在上文条件下计算困惑度。"""
        self.adapter.predict_next('你好', 3)
        self.assertEqual(self.backend.calls, [
            ('continue', '你好', 6, PredictionAdapter.NEXT_WORD_CHARS),
            ('perplexity', ['世界', '中国', '人'], '你好'),
        ])

    def test_threshold_and_limit(self):
        """测试阈值过滤和数量上限。"""
        self.assertEqual([c.text for c in self.adapter.predict_next('你好', 1)], ['人'])
        self.adapter.set_threshold(0.8)
        self.assertEqual([c.text for c in self.adapter.predict_next('你好', 5)], ['人', '世界'])

    def test_unknown_perplexity(self):
        """测试无法计算困惑度时只得基础分。"""
        adapter = PredictionAdapter(backend=FakeBackend(continuations=['天气']))
        results = adapter.predict_next('今天', 5)
        self.assertEqual([c.text for c in results], ['天气'])
        self.assertAlmostEqual(results[0].score, 0.7)

    def test_degrades_silently(self):
        """测试无模型、空上文、后端异常、超时都返回空结果。"""
        self.assertEqual(PredictionAdapter().predict_next('你好', 5), [])
        self.assertEqual(self.adapter.predict_next('', 5), [])
        self.assertEqual(self.adapter.predict_next('  ', 5), [])
        self.assertEqual(self.adapter.predict_next('你好', 0), [])

        broken = PredictionAdapter(backend=FakeBackend(error=RuntimeError('boom')))
        self.assertEqual(broken.predict_next('你好', 5), [])

        slow = PredictionAdapter(backend=FakeBackend(continuations=['世界'], delay=0.5), timeout_ms=50)
        start = time.perf_counter()
        self.assertEqual(slow.predict_next('你好', 5), [])
        self.assertLess(time.perf_counter() - start, 0.4)
        slow.shutdown()


class TestCompletePartialInput(unittest.TestCase):
    """测试部分文本补全。"""

    def setUp(self):
        self.backend = FakeBackend(
            continuations=['好吗', '好', 'ab好', '们好吗'],
            ppl={'好吗': 1.0, '们好吗': 3.0},
        )
        self.adapter = PredictionAdapter(backend=self.backend)

    def test_completions(self):
        """测试补全结果为 部分文本 + 紧接的续写，得分 0.7 + 0.3 / 困惑度。"""
        results = self.adapter.complete_partial_input('你', 5)
        self.assertEqual([c.text for c in results], ['你好吗', '你们好吗', '你好'])
        self.assertAlmostEqual(results[0].score, 1.0)
        self.assertAlmostEqual(results[1].score, 0.8)
        self.assertAlmostEqual(results[2].score, 0.7)
        self.assertEqual(results[0].romanization, 'ni hao ma')

    def test_backend_arguments(self):
        """测试续写部分文本，困惑度只统计续写部分。"""
        self.adapter.complete_partial_input('你', 2)
        self.assertEqual(self.backend.calls, [
            ('continue', '你', 4, PredictionAdapter.COMPLETION_CHARS),
            ('perplexity', ['好吗', '好', '们好吗'], '你'),
        ])

    def test_limit_and_threshold(self):
        """测试数量上限和阈值。"""
        self.assertEqual(len(self.adapter.complete_partial_input('你', 2)), 2)
        self.adapter.set_threshold(0.75)
        self.assertEqual([c.text for c in self.adapter.complete_partial_input('你', 5)], ['你好吗', '你们好吗'])

    def test_degrades_silently(self):
        """测试无模型、空输入、后端异常时返回空结果。"""
        self.assertEqual(PredictionAdapter().complete_partial_input('你', 5), [])
        self.assertEqual(self.adapter.complete_partial_input('', 5), [])
        broken = PredictionAdapter(backend=FakeBackend(error=RuntimeError('boom')))
        self.assertEqual(broken.complete_partial_input('你', 5), [])


class TestPerplexity(unittest.TestCase):
    """测试困惑度计算。"""

    def test_calculate(self):
        """测试返回后端的困惑度。"""
        backend = FakeBackend(ppl={'你好': 3.5})
        adapter = PredictionAdapter(backend=backend)
        self.assertEqual(adapter.calculate_perplexity('你好', '我说'), 3.5)
        self.assertEqual(backend.calls, [('perplexity', ['你好'], '我说')])

    def test_unavailable_is_inf(self):
        """测试无模型、空文本、后端异常时为 inf。"""
        self.assertEqual(PredictionAdapter().calculate_perplexity('你好'), float('inf'))
        adapter = PredictionAdapter(backend=FakeBackend(ppl={'你好': 3.5}))
        self.assertEqual(adapter.calculate_perplexity(''), float('inf'))
        broken = PredictionAdapter(backend=FakeBackend(error=RuntimeError('boom')))
        self.assertEqual(broken.calculate_perplexity('你好'), float('inf'))


class TestUpdateModel(unittest.TestCase):
    """测试模型切换。"""

    def setUp(self):
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.old_path = os.path.join(tmp.name, 'old.pt')
        self.new_path = os.path.join(tmp.name, 'new.pt')
        for path in (self.old_path, self.new_path):
            with open(path, 'wb') as f:
                f.write(b'0')

        self.backends = {
            self.old_path: FakeBackend(name='old'),
            self.new_path: FakeBackend(name='new'),
        }
        self.adapter = PredictionAdapter(model_path=self.old_path, loader=self.backends.__getitem__)

    def test_same_path_noop(self):
        """测试路径不变时直接成功。"""
        self.assertTrue(self.adapter.update_model(self.old_path))
        self.assertEqual(self.adapter.get_model_info(), 'old')

    def test_missing_file_keeps_old(self):
        """测试新模型不存在时保留旧模型。"""
        self.assertFalse(self.adapter.update_model('/nonexistent/model.pt'))
        self.assertEqual(self.adapter.get_model_info(), 'old')
        self.assertEqual(self.adapter.model_path, self.old_path)

    def test_load_failure_keeps_old(self):
        """测试新模型加载失败时保留旧模型。"""
        del self.backends[self.new_path]
        self.assertFalse(self.adapter.update_model(self.new_path))
        self.assertEqual(self.adapter.get_model_info(), 'old')
        self.assertFalse(self.backends[self.old_path].closed)

    def test_swap(self):
        """测试切换成功后关闭旧模型。"""
        self.assertTrue(self.adapter.update_model(self.new_path))
        self.assertEqual(self.adapter.get_model_info(), 'new')
        self.assertTrue(self.backends[self.old_path].closed)

    def test_shutdown(self):
        """测试关闭后不可用。"""
        self.adapter.shutdown()
        self.assertFalse(self.adapter.is_available())
        self.assertTrue(self.backends[self.old_path].closed)


if __name__ == '__main__':
    unittest.main()
