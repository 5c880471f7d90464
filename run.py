"""
程序主入口：监控目录、比较两张图片、对单张图片做编码提取。
"""

from __future__ import annotations

import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import Optional

import click

import settings as settings_module
from consumer.ocr import OCRFailed, TextExtractor
from consumer.pipeline import CandidatePipeline
from consumer.similarity import SimilarityScorer
from image_ops import ImageDecodeFailed, ImageNotFound
from watcher.directory_watcher import (
    CeleryDispatcher,
    DirectoryWatcher,
    ReferenceImageUnavailable,
    ThreadDispatcher,
)


def _setup_logging(app_settings) -> None:
    logging.basicConfig(
        level=getattr(logging, str(app_settings.logging.level).upper(), logging.INFO),
        format=app_settings.logging.format,
        stream=sys.stderr,
    )


def _thread_dispatcher_factory(app_settings, threshold: float):
    scorer = SimilarityScorer.from_settings(app_settings.similarity)
    extractor = TextExtractor.from_settings(app_settings.ocr)

    def factory(reference):
        pipeline = CandidatePipeline(reference, scorer, extractor, threshold=threshold)
        return ThreadDispatcher(
            pipeline.process,
            max_workers=app_settings.queue.max_workers,
            max_pending=app_settings.queue.max_pending,
            task_timeout_seconds=app_settings.queue.task_timeout_seconds,
        )

    return factory


def _celery_dispatcher_factory(reference_path: str, threshold: float):
    from consumer.worker import handle_candidate_task

    def factory(reference):
        return CeleryDispatcher(handle_candidate_task, reference_path=reference_path, threshold=threshold)

    return factory


@click.group()
@click.option("--config", "config_path", type=click.Path(dir_okay=False), default=None, help="配置文件路径（默认 settings.yaml）")
@click.pass_context
def cli(ctx: click.Context, config_path: Optional[str]) -> None:
    """参考图相似度筛选 + 编码提取工具"""
    try:
        app_settings = settings_module.load_settings(Path(config_path)) if config_path else settings_module.settings
    except FileNotFoundError as e:
        raise click.ClickException(str(e))
    _setup_logging(app_settings)
    ctx.obj = app_settings


@cli.command()
@click.option("--dir", "-d", "directory", default=None, help="监控目录")
@click.option("--reference", "-r", default=None, help="参考图路径")
@click.option("--threshold", type=float, default=None, help="相似度阈值")
@click.option("--interval-ms", type=int, default=None, help="扫描间隔（毫秒）")
@click.option("--celery", "-c", is_flag=True, help="使用 Celery 处理（需要启动 worker）")
@click.option("--times", "-t", default=0, help="扫描轮数，0 表示一直运行")
@click.pass_obj
def watch(app_settings, directory, reference, threshold, interval_ms, celery, times) -> None:
    """监控目录，新图片与参考图相似时提取编码并输出"""
    watch_settings = app_settings.watch
    threshold = app_settings.similarity.threshold if threshold is None else threshold
    reference = reference or watch_settings.reference_image
    if celery:
        click.echo("使用 Celery 模式处理，请确保已启动 worker", err=True)
        factory = _celery_dispatcher_factory(reference, threshold)
    else:
        factory = _thread_dispatcher_factory(app_settings, threshold)

    watcher = DirectoryWatcher(
        directory or watch_settings.directory,
        reference,
        factory,
        extensions=watch_settings.extensions,
    )
    try:
        watcher.run_forever(
            interval_ms=watch_settings.poll_interval_ms if interval_ms is None else interval_ms,
            times=times,
        )
    except ReferenceImageUnavailable:
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("\n监控已停止", err=True)
        watcher.close(wait=False)
        return
    watcher.close(wait=True)


@cli.command()
@click.argument("image")
@click.argument("reference")
@click.pass_obj
def compare(app_settings, image: str, reference: str) -> None:
    """计算两张图片的 SSIM 并给出是否通过阈值"""
    scorer = SimilarityScorer.from_settings(app_settings.similarity)
    try:
        score = scorer.compare_files(image, reference)
    except (ImageNotFound, ImageDecodeFailed) as e:
        click.echo(f"错误: {e}", err=True)
        sys.exit(1)
    passed = score > app_settings.similarity.threshold
    click.echo(f"{score:.4f} {'match' if passed else 'no-match'}")


@cli.command()
@click.argument("image")
@click.option("--engine", "-e", default=None, help="OCR 引擎：paddle / tesseract")
@click.pass_obj
def extract(app_settings, image: str, engine: Optional[str]) -> None:
    """对单张图片做 OCR，并按规则输出编码"""
    if not Path(image).exists():
        click.echo(f"文件不存在: {image}", err=True)
        sys.exit(1)
    ocr_settings = app_settings.ocr
    if engine:
        ocr_settings = replace(ocr_settings, engine=engine)
    try:
        extractor = TextExtractor.from_settings(ocr_settings)
        code = extractor.extract(image)
    except (ValueError, OCRFailed) as e:
        click.echo(f"错误: {e}", err=True)
        sys.exit(1)
    if code is None:
        click.echo("未找到编码", err=True)
        return
    click.echo(code)


if __name__ == "__main__":
    cli()
