import logging
import sys

from browser_task.config import BrowserTaskConfig

RESULT_LEVEL = 35

THIRD_PARTY_LOGGERS = ['httpx', 'httpcore', 'asyncio', 'lmnr']


class TaskLogFormatter(logging.Formatter):
	"""Prefixes records that carry `task_id`/`step` extras with a short task tag."""

	def format(self, record):
		task_id = getattr(record, 'task_id', None)
		step = getattr(record, 'step', None)
		record.task_tag = f'[{task_id[-6:]}#{step}] ' if task_id else ''
		return super().format(record)


def setup_logging(stream=None, log_level=None, force_setup=False):
	"""Setup logging configuration for browser-task.

	Args:
		stream: Output stream for logs (default: sys.stdout).
		log_level: Override log level ('debug', 'info' or 'result'; default from the environment).
		force_setup: Force reconfiguration even if handlers already exist
	"""
	if logging.getLevelName(RESULT_LEVEL) != 'RESULT':
		logging.addLevelName(RESULT_LEVEL, 'RESULT')

	log_type = log_level or BrowserTaskConfig.from_env().logging_level

	package_logger = logging.getLogger('browser_task')
	if package_logger.handlers and not force_setup:
		return package_logger
	package_logger.handlers = []

	console = logging.StreamHandler(stream or sys.stdout)
	if log_type == 'result':
		console.setFormatter(TaskLogFormatter('%(message)s'))
		package_logger.setLevel(RESULT_LEVEL)
	else:
		console.setFormatter(TaskLogFormatter('%(levelname)-8s [%(name)s] %(task_tag)s%(message)s'))
		package_logger.setLevel(logging.DEBUG if log_type == 'debug' else logging.INFO)

	package_logger.addHandler(console)
	package_logger.propagate = False

	for logger_name in THIRD_PARTY_LOGGERS:
		third_party = logging.getLogger(logger_name)
		third_party.setLevel(logging.ERROR)
		third_party.propagate = False

	return package_logger
