import os

from browser_task.logging_config import setup_logging

if os.environ.get('BROWSER_TASK_SETUP_LOGGING', 'true').lower() != 'false':
	logger = setup_logging()
else:
	import logging

	logger = logging.getLogger('browser_task')


# Resolved on first access so `import browser_task` stays cheap.
_LAZY_EXPORTS = {
	# Orchestration
	'TaskOrchestrator': ('browser_task.agent.orchestrator', 'TaskOrchestrator'),
	'TaskSettings': ('browser_task.agent.settings', 'TaskSettings'),
	'BrowserTaskService': ('browser_task.agent.service', 'BrowserTaskService'),
	'ControlAction': ('browser_task.agent.service', 'ControlAction'),
	'ControlResponse': ('browser_task.agent.service', 'ControlResponse'),
	'TaskControlRequest': ('browser_task.agent.service', 'TaskControlRequest'),
	# Planning
	'ActionPlanner': ('browser_task.agent.planner', 'ActionPlanner'),
	'LLMActionPlanner': ('browser_task.agent.planner', 'LLMActionPlanner'),
	# Data model
	'Task': ('browser_task.agent.views', 'Task'),
	'TaskResult': ('browser_task.agent.views', 'TaskResult'),
	'TaskStatus': ('browser_task.agent.views', 'TaskStatus'),
	'Step': ('browser_task.agent.views', 'Step'),
	'StepTool': ('browser_task.agent.views', 'StepTool'),
	'StepStatus': ('browser_task.agent.views', 'StepStatus'),
	'PlannedAction': ('browser_task.agent.views', 'PlannedAction'),
	'ExtractionSchema': ('browser_task.agent.views', 'ExtractionSchema'),
	'ExtractionResult': ('browser_task.agent.views', 'ExtractionResult'),
	'TaskEvent': ('browser_task.agent.events', 'TaskEvent'),
	'TaskEventType': ('browser_task.agent.events', 'TaskEventType'),
	# Browser
	'SessionProvider': ('browser_task.browser', 'SessionProvider'),
	'RemoteSessionProvider': ('browser_task.browser', 'RemoteSessionProvider'),
	'Controller': ('browser_task.controller.service', 'Controller'),
	# Display
	'SessionStore': ('browser_task.store', 'SessionStore'),
	'BrowserViewState': ('browser_task.store', 'BrowserViewState'),
	# Configuration
	'BrowserTaskConfig': ('browser_task.config', 'BrowserTaskConfig'),
}


def __getattr__(name: str):
	entry = _LAZY_EXPORTS.get(name)
	if not entry:
		raise AttributeError(f"module '{__name__}' has no attribute '{name}'")
	module_path, attr_name = entry
	from importlib import import_module

	attr = getattr(import_module(module_path), attr_name)
	globals()[name] = attr
	return attr


__all__ = list(_LAZY_EXPORTS.keys())
