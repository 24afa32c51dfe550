import html
import json
import logging
import re
from datetime import datetime

import requests

from .events import format_rate
from .layers import LayerKind

logger = logging.getLogger(__name__)

MAX_TOKENS = 300
TEMPERATURE = 0.7
RECENT_INTERACTIONS = 5
RECENT_EXPLANATIONS = 10
RECENT_CHAT_TURNS = 10
STATUS_PREVIEW_CHARS = 160

DEFAULT_BASE_URL = 'https://api.openai.com/v1'
DEFAULT_MODEL = 'gpt-3.5-turbo'

LAYER_EXPLANATIONS = {
    LayerKind.INPUT: 'receives your original image data',
    LayerKind.CONV: 'scans for patterns like edges and shapes using filters',
    LayerKind.POOL: 'reduces image size while keeping important features',
    LayerKind.FLATTEN: 'converts 2D data into a 1D list for the final layers',
    LayerKind.DENSE: 'makes connections between features to determine the final prediction',
    LayerKind.DROPOUT: 'randomly switches off some neurons during training so the network generalizes better',
    LayerKind.OUTPUT: 'produces the final prediction probabilities for each digit',
}

INSTRUCTIONS = """INSTRUCTIONS:
- Answer questions about the CNN, its layers, training process, or current state
- Use the current application state to give specific, contextual answers
- Explain complex concepts in simple terms with analogies
- If the user asks about specific predictions or training metrics, reference the actual current values
- If they ask about layer processing, explain what's currently happening or what just happened
- Be encouraging and educational
- Keep responses concise but informative (2-3 sentences usually)
- Use emojis sparingly for clarity"""

_TAG_RE = re.compile(r'<[^>]+>')
_SPACE_RE = re.compile(r'\s+')


class CompletionUnavailable(RuntimeError):
    pass


def strip_html(text, limit=None):
    plain = _SPACE_RE.sub(' ', html.unescape(_TAG_RE.sub('', text or ''))).strip()
    if limit is not None and len(plain) > limit:
        plain = plain[:limit - 1].rstrip() + '…'
    return plain


def _clock_time(timestamp):
    return datetime.fromtimestamp(timestamp).strftime('%H:%M:%S')


def _layer_status(index, snapshot):
    focus = snapshot.focus_layer_index
    if focus < 0:
        return 'completed' if snapshot.last_prediction else 'pending'
    if index < focus:
        return 'completed'
    if index == focus:
        return 'CURRENTLY PROCESSING'
    return 'pending'


def build_system_prompt(snapshot):
    training = snapshot.training
    processing = snapshot.processing
    prediction = snapshot.last_prediction

    lines = [
        "You are an AI assistant helping users understand a Convolutional Neural Network (CNN) "
        "visualization application. You can see everything that's happening in real-time.",
        "",
        "CURRENT APPLICATION STATE:",
        "",
        "CANVAS STATUS:",
        f"- Has drawing: {str(snapshot.has_drawing).lower()}",
    ]
    if prediction:
        lines.append(f"- Last prediction: Predicted digit {prediction['predictedClass']} with "
                     f"{prediction['confidence'] * 100:.1f}% confidence")
    else:
        lines.append("- Last prediction: No prediction yet")

    lines += [
        "",
        "TRAINING STATUS:",
        f"- Currently training: {str(bool(training['isTraining'])).lower()}",
        f"- Epochs setting: {training['epochs']}",
        f"- Learning rate: {format_rate(training['learningRate'])}",
    ]
    if training['isTraining']:
        lines += [
            f"- Current epoch: {training['currentEpoch']}",
            f"- Current batch: {training['currentBatch']}",
            f"- Latest loss: {training['lastLoss']}",
            f"- Latest accuracy: {training['lastAccuracy']}",
        ]

    lines += ["", "PROCESSING STATUS:",
              f"- Currently processing: {str(bool(processing['isProcessing'])).lower()}"]
    if processing.get('currentLayer'):
        lines += [
            f"- Current layer: {processing['currentLayer']} (index {processing['layerIndex']})",
            f"- Layer activations available: {str(bool(processing.get('activations'))).lower()}",
        ]

    lines += ["", "NETWORK ARCHITECTURE:"]
    for index, layer in enumerate(snapshot.layers):
        lines.append(f"- {layer.name}: {layer.kind.value} layer, size {layer.size} "
                     f"[{_layer_status(index, snapshot)}]")

    if snapshot.interactions:
        lines += ["", "RECENT USER ACTIONS:"]
        for interaction in snapshot.interactions[-RECENT_INTERACTIONS:]:
            line = f"- {_clock_time(interaction['timestamp'])}: {interaction['action']}"
            if interaction['data']:
                line += f" ({json.dumps(dict(interaction['data']), sort_keys=True, default=str)})"
            lines.append(line)

    if snapshot.open_help_topics:
        lines += ["", "INFO MODALS VIEWED:",
                  f"- User has opened info for: {', '.join(snapshot.open_help_topics)}"]

    if snapshot.explanations:
        lines += ["", "RECENT LIVE STATUS MESSAGES:"]
        for entry in snapshot.explanations[-RECENT_EXPLANATIONS:]:
            lines.append(f"- [{entry['category']}] {strip_html(entry['text'])}")

    lines += ["", INSTRUCTIONS, "", "CONVERSATION HISTORY:"]
    for message in snapshot.chat_history[-RECENT_CHAT_TURNS:]:
        speaker = 'User' if message['sender'] == 'user' else 'Assistant'
        lines.append(f"{speaker}: {message['text']}")

    return '\n'.join(lines)


def _mentions(text, *words):
    return any(word in text for word in words)


def fallback_response(message, snapshot):
    """Canned answer built from the snapshot, used when the chat service is down."""
    text = message.lower()
    training = snapshot.training
    prediction = snapshot.last_prediction
    focus = snapshot.focus_layer_index

    if _mentions(text, 'predict'):
        if prediction:
            return (f"Based on your drawing, the CNN predicted the digit {prediction['predictedClass']} with "
                    f"{prediction['confidence'] * 100:.1f}% confidence. The network analyzed your drawing "
                    f"through multiple layers to reach this conclusion!")
        return ('No prediction has been made yet. Try drawing a digit (0-9) on the canvas and click '
                '"Process Through CNN" to see what the network predicts!')

    if _mentions(text, 'train'):
        if training['isTraining']:
            rate = format_rate(training['learningRate'])
            return (f"Training is currently in progress! The network is learning from examples with "
                    f"{training['epochs']} epochs and a learning rate of {rate}. "
                    f"Current performance: Loss {training['lastLoss']}, Accuracy {training['lastAccuracy']}.")
        return ("The network isn't currently training. You can start training by clicking "
                '"Start Training" to teach the CNN to recognize digits better!')

    if _mentions(text, 'layer', 'convolution', 'pooling'):
        if 0 <= focus < len(snapshot.layers):
            layer = snapshot.layers[focus]
            return (f"The network is currently processing the {layer.name} layer ({layer.kind.value}). "
                    f"This layer {LAYER_EXPLANATIONS[layer.kind]}.")
        return ('The CNN has multiple layers: convolution layers detect patterns, pooling layers reduce size, '
                'and dense layers make final decisions. Each layer transforms your image step by step!')

    if _mentions(text, 'draw', 'canvas'):
        if snapshot.has_drawing:
            return ('I can see you have something drawn on the canvas! Click "Process Through CNN" to see how '
                    'the network analyzes your drawing layer by layer.')
        return ('The canvas is currently empty. Try drawing a digit (0-9) with your mouse or finger, then '
                'process it through the CNN to see how it recognizes your drawing!')

    latest = strip_html(snapshot.latest_explanation, STATUS_PREVIEW_CHARS) if snapshot.latest_explanation else ''

    if _mentions(text, 'happening', 'going on', 'status'):
        if training['isTraining']:
            return (f"Training is running: epoch {training['currentEpoch']} of {training['epochs']}, "
                    f"batch {training['currentBatch']}. Latest loss {training['lastLoss']}, "
                    f"accuracy {training['lastAccuracy']}.")
        if snapshot.processing['isProcessing'] and 0 <= focus < len(snapshot.layers):
            layer = snapshot.layers[focus]
            return (f"Your drawing is moving through the network. Right now the {layer.name} layer "
                    f"{LAYER_EXPLANATIONS[layer.kind]}.")
        if latest:
            return f"Here's the latest update: {latest}"
        return ('Nothing is running right now. Draw a digit and process it, or start training, and I will '
                'walk you through what happens.')

    invitation = ("I'm here to help you understand this CNN visualization! You can ask me about the current "
                  "prediction, training progress, what each layer does, or anything else about how neural "
                  "networks work. What would you like to know?")
    if latest:
        return f"Latest update: {latest}\n\n{invitation}"
    return invitation


class CompletionClient:
    """Minimal client for an OpenAI-compatible chat completions endpoint."""

    def __init__(self, api_key=None, base_url=DEFAULT_BASE_URL, model=DEFAULT_MODEL, timeout=30):
        self.api_key = api_key
        self.base_url = base_url.rstrip('/')
        self.model = model
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings):
        return cls(api_key=settings.openai_api_key, base_url=settings.openai_base_url,
                   model=settings.chat_model, timeout=settings.chat_timeout)

    def complete(self, system_prompt, user_message, max_tokens=MAX_TOKENS, temperature=TEMPERATURE):
        if not self.api_key:
            raise CompletionUnavailable("no completion-service API key configured")

        payload = {
            'model': self.model,
            'messages': [
                {'role': 'system', 'content': system_prompt},
                {'role': 'user', 'content': user_message},
            ],
            'max_tokens': max_tokens,
            'temperature': temperature,
        }
        headers = {
            'Content-Type': 'application/json',
            'Authorization': f'Bearer {self.api_key}',
        }
        try:
            response = requests.post(f'{self.base_url}/chat/completions', headers=headers,
                                     json=payload, timeout=self.timeout)
            response.raise_for_status()
            content = response.json()['choices'][0]['message']['content']
        except requests.RequestException as exc:
            raise CompletionUnavailable(f"completion request failed: {exc}") from exc
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise CompletionUnavailable(f"malformed completion response: {exc!r}") from exc

        if not isinstance(content, str) or not content.strip():
            raise CompletionUnavailable("completion response was empty")
        return content.strip()


class ChatResponder:
    def __init__(self, client=None):
        self.client = client if client is not None else CompletionClient()

    def respond(self, message, snapshot):
        system_prompt = build_system_prompt(snapshot)
        try:
            return self.client.complete(system_prompt, message)
        except CompletionUnavailable as exc:
            logger.warning("Chat service unavailable, answering locally: %s", exc)
            return fallback_response(message, snapshot)
