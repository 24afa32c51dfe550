"""Per-session record of what the user sees and does.

``AppContext`` mirrors engine events and user actions without doing any
I/O of its own; ``snapshot()`` freezes it for the chat assistant.
"""
import logging
import time
from collections import deque
from dataclasses import dataclass
from types import MappingProxyType

from .layers import LAYERS, LayerDescriptor
from .narration import CATEGORIES

logger = logging.getLogger(__name__)

INTERACTION_LOG_SIZE = 50
EXPLANATION_LOG_SIZE = 20
DEFAULT_EPOCHS = 5
DEFAULT_LEARNING_RATE = 0.001


def default_training_state(epochs=DEFAULT_EPOCHS, learning_rate=DEFAULT_LEARNING_RATE):
    return {
        'isTraining': False,
        'epochs': epochs,
        'learningRate': learning_rate,
        'currentEpoch': 0,
        'currentBatch': 0,
        'lastLoss': None,
        'lastAccuracy': None,
    }


def default_processing_state():
    return {'isProcessing': False, 'currentLayer': None, 'layerIndex': -1, 'activations': {}}


def _freeze(mapping):
    return MappingProxyType(dict(mapping))


@dataclass(frozen=True)
class Snapshot:
    has_drawing: bool
    last_prediction: object
    training: MappingProxyType
    processing: MappingProxyType
    layers: tuple
    focus_layer_index: int
    interactions: tuple
    explanations: tuple
    open_help_topics: tuple
    chat_history: tuple
    taken_at: float

    @property
    def latest_explanation(self):
        return self.explanations[-1]['text'] if self.explanations else None

    @classmethod
    def from_payload(cls, payload, clock=time.time):
        """Build a snapshot from the browser-side context shape.

        Accepts ``{appContext, networkLayers, currentLayerIndex,
        canvasHasDrawing}``; browser timestamps are milliseconds.
        """
        app_context = payload.get('appContext') or {}
        layers = tuple(LayerDescriptor.from_dict(layer) for layer in payload.get('networkLayers') or ()) or LAYERS

        training = default_training_state()
        training.update(app_context.get('currentTraining') or {})
        processing = default_processing_state()
        processing.update(app_context.get('lastProcessing') or {})

        prediction = app_context.get('lastPrediction')
        interactions = tuple(
            _freeze({'timestamp': _seconds(entry.get('timestamp')), 'action': entry.get('action', ''),
                     'data': entry.get('data') or {}})
            for entry in (app_context.get('userInteractions') or ())[-INTERACTION_LOG_SIZE:]
        )
        explanations = tuple(
            _freeze({'timestamp': _seconds(entry.get('timestamp')),
                     'category': entry.get('type') or entry.get('category') or 'info',
                     'text': entry.get('text', '')})
            for entry in (app_context.get('liveExplanationHistory') or ())[-EXPLANATION_LOG_SIZE:]
        )
        chat_history = tuple(
            _freeze({'sender': 'user' if entry.get('sender') == 'user' else 'assistant',
                     'text': entry.get('message', entry.get('text', '')),
                     'timestamp': _seconds(entry.get('timestamp'))})
            for entry in app_context.get('chatHistory') or ()
        )
        has_drawing = payload.get('canvasHasDrawing', app_context.get('hasDrawing', False))

        return cls(
            has_drawing=bool(has_drawing),
            last_prediction=_freeze(prediction) if prediction else None,
            training=_freeze(training),
            processing=_freeze(processing),
            layers=layers,
            focus_layer_index=int(payload.get('currentLayerIndex', -1)),
            interactions=interactions,
            explanations=explanations,
            open_help_topics=tuple(app_context.get('openInfoModals') or ()),
            chat_history=chat_history,
            taken_at=clock(),
        )


def _seconds(timestamp):
    if timestamp is None:
        return 0.0
    timestamp = float(timestamp)
    # browser clocks report milliseconds since the epoch
    return timestamp / 1000.0 if timestamp > 1e11 else timestamp


class AppContext:
    def __init__(self, layers=LAYERS, clock=time.time,
                 epochs=DEFAULT_EPOCHS, learning_rate=DEFAULT_LEARNING_RATE):
        self.layers = tuple(layers)
        self.clock = clock
        self.has_drawing = False
        self.last_prediction = None
        self.training = default_training_state(epochs, learning_rate)
        self.processing = default_processing_state()
        self.focus_layer_index = -1
        self.interactions = deque(maxlen=INTERACTION_LOG_SIZE)
        self.explanations = deque(maxlen=EXPLANATION_LOG_SIZE)
        self.open_help_topics = []
        self.chat_history = []

    def record_interaction(self, action, data=None):
        self.interactions.append({'timestamp': self.clock(), 'action': action, 'data': dict(data or {})})

    def record_explanation(self, text, category='info'):
        if category not in CATEGORIES:
            raise ValueError(f"Unknown live-status category: {category!r}")
        self.explanations.append({'timestamp': self.clock(), 'category': category, 'text': text})

    def record_chat(self, sender, text):
        if sender not in ('user', 'assistant'):
            raise ValueError(f"Unknown chat sender: {sender!r}")
        self.chat_history.append({'sender': sender, 'text': text, 'timestamp': self.clock()})

    # user actions

    def draw_started(self):
        if self.has_drawing:
            return False
        self.has_drawing = True
        self.record_interaction('started_drawing')
        return True

    def clear_canvas(self):
        self.has_drawing = False
        self.last_prediction = None
        self.focus_layer_index = -1
        self.processing['activations'] = {}
        self.record_interaction('canvas_cleared')

    def image_uploaded(self, file_name=None):
        self.has_drawing = True
        self.record_interaction('image_uploaded', {'fileName': file_name} if file_name else None)

    def open_help(self, topic):
        self.open_help_topics.append(topic)
        self.record_interaction('info_modal_opened', {'infoKey': topic})

    def parameters_changed(self, params):
        for key in ('epochs', 'learningRate'):
            if params.get(key) is not None:
                self.training[key] = params[key]
        self.record_interaction('parameters_changed', params)

    def start_training(self, epochs, learning_rate):
        self.training = default_training_state(epochs, learning_rate)
        self.training['isTraining'] = True
        self.record_interaction('training_started', {'epochs': epochs, 'learningRate': learning_rate})

    def training_failed(self):
        self.training['isTraining'] = False

    def start_processing(self):
        self.processing = default_processing_state()
        self.processing['isProcessing'] = True
        self.record_interaction('processing_started')

    def processing_failed(self):
        self.processing['isProcessing'] = False
        self.focus_layer_index = -1

    # engine events

    def observe(self, event):
        kind = event.get('type')
        if kind == 'training-epoch-start':
            self.training['currentEpoch'] = event['epoch']
        elif kind == 'training-step':
            self.training.update(currentEpoch=event['epoch'], currentBatch=event['batch'],
                                 lastLoss=event['loss'], lastAccuracy=event['accuracy'])
        elif kind == 'training-complete':
            self.training['isTraining'] = False
            self.record_interaction('training_completed', {'finalLoss': event['finalLoss'],
                                                           'finalAccuracy': event['finalAccuracy']})
        elif kind == 'layer-processing-start':
            self.focus_layer_index = event['layerIndex']
            self.processing.update(currentLayer=event['layer']['name'], layerIndex=event['layerIndex'])
        elif kind == 'layer-processing-complete':
            self.processing['activations'][event['layerIndex']] = event['activationData']
        elif kind == 'processing-complete':
            self.processing['isProcessing'] = False
            self.focus_layer_index = -1
            self.last_prediction = {
                'predictedClass': event['predictedClass'],
                'confidence': event['confidence'],
                'predictions': list(event['predictions']),
            }
            self.record_interaction('processing_completed', {'predictedClass': event['predictedClass'],
                                                             'confidence': round(event['confidence'], 4)})

    def snapshot(self):
        processing = dict(self.processing)
        processing['activations'] = dict(processing['activations'])
        return Snapshot(
            has_drawing=self.has_drawing,
            last_prediction=_freeze(self.last_prediction) if self.last_prediction else None,
            training=_freeze(self.training),
            processing=_freeze(processing),
            layers=self.layers,
            focus_layer_index=self.focus_layer_index,
            interactions=tuple(_freeze(entry) for entry in self.interactions),
            explanations=tuple(_freeze(entry) for entry in self.explanations),
            open_help_topics=tuple(self.open_help_topics),
            chat_history=tuple(_freeze(entry) for entry in self.chat_history),
            taken_at=self.clock(),
        )
