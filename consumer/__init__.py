"""
Consumer 侧模块。

- similarity: 结构相似度计算。
- ocr: OCR 引擎封装与编码提取规则。
- pipeline: 单个文件的 读取 -> 比较 -> 识别 -> 输出 流程。
- worker: 以 Celery 任务方式运行同一流程。
"""

__all__ = []
