"""机器人运行时：主循环。

负责组装各组件并处理事件的完整生命周期：
1. 从消息总线接收入站事件
2. 交给 EventEngine（会话加载、入站中间件、对话引擎、会话保存）
3. 对话引擎的回复经出站中间件进入出站队列
4. 出站调度把事件交给订阅的渠道

不同事件在各自的任务中并发处理；单个事件失败只记录日志，不会停止循环。
"""

import asyncio

from loguru import logger

from flowbot.actions.registry import ActionRegistry
from flowbot.actions.servers import ActionServersService
from flowbot.bus.events import Event
from flowbot.bus.queue import MessageBus
from flowbot.config.schema import Config
from flowbot.content.renderer import ContentRenderer, TemplateRenderer
from flowbot.dialog.engine import DialogEngine
from flowbot.dialog.evaluator import IsolatedEvaluator, SandboxPolicy
from flowbot.dialog.flow import FlowLoader
from flowbot.dialog.strategy import ActionStrategy, TransitionStrategy
from flowbot.runtime.pipeline import EventEngine
from flowbot.session.manager import SessionManager


class BotRuntime:
    """机器人运行时。

    生命周期：
    1. 初始化：按配置创建会话、动作、渲染、对话引擎与事件管道
    2. 运行：run() 消费入站事件，每个事件一个任务
    3. 停止：stop() 结束循环，等待进行中的事件处理完成

    Attributes:
        config: 根配置
        bus: 消息总线
        sessions: 会话管理器
        actions: 本地动作注册中心
        engine: 事件管道
        dialog: 对话引擎
    """

    def __init__(
        self,
        config: Config,
        bus: MessageBus | None = None,
        sessions: SessionManager | None = None,
        actions: ActionRegistry | None = None,
        renderer: ContentRenderer | None = None,
        flows: FlowLoader | None = None,
    ):
        self.config = config
        self.bus = bus or MessageBus()
        self.sessions = sessions or SessionManager.from_config(config)
        self.actions = actions or ActionRegistry(ActionServersService.from_config(config.action_servers))
        self.renderer = renderer or TemplateRenderer()
        self.flows = flows or FlowLoader(config.flows_path)

        self.engine = EventEngine(self.bus, self.sessions, timeout_ms=config.middleware.timeout_ms)

        dialog_config = config.dialog
        action_strategy = ActionStrategy(
            actions=self.actions,
            renderer=self.renderer,
            event_engine=self.engine,
            error_flow=dialog_config.error_flow,
            last_messages_limit=dialog_config.last_messages_limit,
        )
        transition_strategy = TransitionStrategy(
            policy=SandboxPolicy(disable_sandbox=dialog_config.disable_transition_sandbox),
            isolated=IsolatedEvaluator(timeout_ms=dialog_config.sandbox_timeout_ms),
        )
        self.dialog = DialogEngine.from_config(dialog_config, self.flows, action_strategy, transition_strategy)
        self.engine.processor = self.dialog.process_event

        self._running = False
        self._tasks: set[asyncio.Task] = set()

    async def run(self) -> None:
        """启动主循环（直到 stop() 被调用）。"""
        self._running = True
        dispatcher = asyncio.create_task(self.bus.dispatch_outbound())
        logger.info("Bot runtime started")

        try:
            while self._running:
                try:
                    # 超时 1 秒以便检查停止标志
                    event = await asyncio.wait_for(self.bus.consume_inbound(), timeout=1.0)
                except asyncio.TimeoutError:
                    continue
                self.spawn(event)
        finally:
            if self._tasks:
                await asyncio.gather(*self._tasks, return_exceptions=True)
            self.bus.stop()
            await dispatcher

    def spawn(self, event: Event) -> asyncio.Task:
        """在独立任务中处理一个事件。"""
        task = asyncio.create_task(self.process_event(event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def process_event(self, event: Event) -> bool:
        """处理单个事件；失败只记录日志。

        Returns:
            True 如果处理成功
        """
        logger.info(f"Processing {event.direction.value} event {event.id} from {event.channel}:{event.target}")
        try:
            await self.engine.dispatch(event)
        except Exception as e:
            logger.error(f"[{event.bot_id}] [{event.target}] Error processing event {event.id}: {e}")
            return False
        return True

    def stop(self) -> None:
        self._running = False
        logger.info("Bot runtime stopping")

    @property
    def pending(self) -> int:
        return len(self._tasks)
