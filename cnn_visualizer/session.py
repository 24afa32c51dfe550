import asyncio
import logging

from . import events, narration
from .context import AppContext, Snapshot
from .engines import check_epochs

logger = logging.getLogger(__name__)

BUSY_MESSAGE = 'Another operation is already running'


class Session:
    """One connected browser: an engine, its channel and its context.

    ``send`` is an async callable taking one event dict. Training and
    processing run as background tasks so the session keeps answering chat
    while they stream; at most one of them runs at a time.
    """

    def __init__(self, send, engine, responder, context=None):
        self._send = send
        self.engine = engine
        self.responder = responder
        self.context = context if context is not None else AppContext(engine.layers,
                                                                      learning_rate=engine.learning_rate)
        self.closed = False
        self._operation = None
        self._tasks = set()
        self._send_lock = asyncio.Lock()
        self._handlers = {
            'start-training': self._on_start_training,
            'process-image': self._on_process_image,
            'update-parameters': self._on_update_parameters,
            'chat-message': self._on_chat_message,
            'draw-start': self._on_draw_start,
            'clear-canvas': self._on_clear_canvas,
            'upload-image': self._on_upload_image,
            'open-help': self._on_open_help,
        }

    @property
    def busy(self):
        return self._operation is not None and not self._operation.done()

    async def send(self, event):
        if self.closed:
            logger.debug("Dropping %s for closed session", event.get('type'))
            return
        async with self._send_lock:
            await self._send(event)

    async def narrate(self, text, category):
        self.context.record_explanation(text, category)
        await self.send(events.live_status(text, category))

    async def start(self):
        training = self.context.training
        await self.send(events.init(self.context.layers, training['epochs'], training['learningRate']))

    async def handle(self, message):
        kind = message.get('type') if isinstance(message, dict) else None
        handler = self._handlers.get(kind)
        if handler is None:
            logger.warning("Ignoring unknown command %r", kind)
            return
        await handler(message)

    async def join(self):
        """Wait for every background task started so far."""
        while True:
            pending = [task for task in self._tasks if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def close(self):
        if self.closed:
            return
        self.closed = True
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self.engine.dispose()

    def _spawn(self, coro):
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task):
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Session task crashed", exc_info=task.exception())

    async def _forward(self, event):
        self.context.observe(event)
        await self.send(event)
        story = narration.narrate(event)
        if story is not None:
            await self.narrate(*story)

    async def _run(self, stream, error_type, on_failure):
        try:
            async for event in stream:
                await self._forward(event)
        except Exception as exc:
            logger.exception("%s failed", error_type)
            on_failure()
            await self._forward(events.error(error_type, str(exc) or exc.__class__.__name__))

    # commands

    async def _on_start_training(self, message):
        if self.busy:
            await self.send(events.error(events.TRAINING_ERROR, BUSY_MESSAGE))
            return
        try:
            epochs = message.get('epochs')
            epochs = check_epochs(self.context.training['epochs'] if epochs is None else epochs)
            learning_rate = message.get('learningRate')
            if learning_rate is not None:
                self.engine.update_parameters({'learningRate': learning_rate})
        except (TypeError, ValueError) as exc:
            logger.warning("Rejected training request: %s", exc)
            await self.send(events.error(events.TRAINING_ERROR, str(exc)))
            return

        logger.info("Starting training: epochs=%s learningRate=%s", epochs, self.engine.learning_rate)
        self.context.start_training(epochs, self.engine.learning_rate)
        await self.narrate(*narration.training_requested(epochs, self.engine.learning_rate))
        self._operation = self._spawn(self._run(self.engine.train(epochs), events.TRAINING_ERROR,
                                                self.context.training_failed))

    async def _on_process_image(self, message):
        if self.busy:
            await self.send(events.error(events.PROCESSING_ERROR, BUSY_MESSAGE))
            return
        logger.info("Processing image through %s engine", self.engine.name)
        self.context.start_processing()
        await self.narrate(*narration.processing_requested())
        self._operation = self._spawn(self._run(self.engine.process(message.get('imageDataUrl')),
                                                events.PROCESSING_ERROR, self.context.processing_failed))

    async def _on_update_parameters(self, message):
        params = {key: value for key, value in message.items() if key != 'type'}
        try:
            if params.get('epochs') is not None:
                check_epochs(params['epochs'])
            applied = self.engine.update_parameters(params)
        except (TypeError, ValueError) as exc:
            logger.warning("Parameter update failed: %s", exc)
            await self.send(events.error(events.PARAMETER_UPDATE_ERROR, str(exc)))
            return
        self.context.parameters_changed(dict(params, **applied))
        await self.send(events.parameter_update_confirmed(params))

    async def _on_chat_message(self, message):
        text = message.get('message')
        if not isinstance(text, str) or not text.strip():
            logger.debug("Ignoring empty chat message")
            return
        text = text.strip()
        self.context.record_chat('user', text)
        self.context.record_interaction('chat_message_sent', {'message': text})

        snapshot = None
        if isinstance(message.get('context'), dict):
            try:
                snapshot = Snapshot.from_payload(message['context'])
            except (TypeError, ValueError, AttributeError) as exc:
                logger.warning("Unusable client context, using session state: %s", exc)
        if snapshot is None:
            snapshot = self.context.snapshot()
        self._spawn(self._answer(text, snapshot))

    async def _answer(self, text, snapshot):
        try:
            reply = await asyncio.to_thread(self.responder.respond, text, snapshot)
        except Exception as exc:
            logger.exception("Chat responder failed")
            await self.send(events.chat_response(error=str(exc) or exc.__class__.__name__))
            return
        self.context.record_chat('assistant', reply)
        await self.send(events.chat_response(reply))

    async def _on_draw_start(self, message):
        self.context.draw_started()

    async def _on_clear_canvas(self, message):
        self.context.clear_canvas()
        await self.narrate(*narration.canvas_cleared())

    async def _on_upload_image(self, message):
        self.context.image_uploaded(message.get('fileName'))
        await self.narrate(*narration.image_uploaded())

    async def _on_open_help(self, message):
        topic = message.get('topic')
        if not isinstance(topic, str) or not topic:
            logger.debug("Ignoring help request without a topic")
            return
        self.context.open_help(topic)
