"""flowbot：对话事件管道与流程执行引擎。

渠道适配器构造 Event，经过入站中间件链进入对话引擎，
引擎按流程图执行指令并产出出站事件，再经出站中间件链交给渠道发送。
"""

__version__ = "0.1.0"
