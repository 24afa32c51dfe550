from .events import format_rate
from .layers import LayerKind

CATEGORIES = ('info', 'training', 'processing', 'success', 'thinking')

LAYER_NARRATIONS = {
    LayerKind.INPUT: "📷 <strong>Input layer</strong> is reading the raw pixels of your drawing, a 28×28 grid of brightness values.",
    LayerKind.CONV: ("🔍 <strong>Convolution layer</strong> is scanning your image with {filters} different filters, "
                     "looking for patterns like edges, curves, and shapes. Think of it like having multiple "
                     "magnifying glasses, each looking for different features."),
    LayerKind.POOL: ("📏 <strong>Pooling layer</strong> is shrinking the image while keeping the important information. "
                     "It's like taking a high-resolution photo and making a smaller version that still shows all "
                     "the key details."),
    LayerKind.FLATTEN: ("📋 <strong>Flatten layer</strong> is converting the 2D image data into a long list of numbers, "
                        "preparing it for the final decision-making layers. Like unrolling a carpet to see all the "
                        "pattern details in a line."),
    LayerKind.DENSE: ("🧠 <strong>Dense layer</strong> is making connections between all the features found earlier. "
                      "These neurons are like a committee discussing what digit this might be based on all the "
                      "patterns they've seen."),
    LayerKind.DROPOUT: ("🎲 <strong>Dropout layer</strong> randomly silences some neurons while training so the "
                        "network doesn't rely too much on any single one. During prediction it lets everything through."),
    LayerKind.OUTPUT: ("🎯 <strong>Output layer</strong> is turning everything it learned into one probability per "
                       "digit from 0 to 9."),
}


def _layer_narration(event):
    layer = event['layer']
    kind = LayerKind.parse(layer['type'])
    filters = layer['outputShape'][-1] if layer.get('outputShape') else 32
    return LAYER_NARRATIONS[kind].format(filters=filters), 'processing'


def _processing_start(event):
    return ("🔍 Starting to analyze your drawing! The CNN will examine it layer by layer to figure out "
            "what digit you drew."), 'processing'


def _processing_complete(event):
    confidence = event['confidence'] * 100
    return (f"🎉 <strong>Analysis complete!</strong> The CNN thinks your drawing is the digit "
            f"<strong>{event['predictedClass']}</strong> with {confidence:.1f}% confidence. Look at the "
            f"prediction bars below to see how confident it is about each possible digit."), 'success'


def _epoch_start(event):
    return (f"📚 <strong>Training Epoch {event['epoch']}/{event['total']}</strong> - The AI is about to see a "
            f"bunch of example images and learn from its mistakes. Think of this like studying flashcards!"), 'training'


def _training_step(event):
    return (f"🎯 <strong>Learning in progress...</strong> Epoch {event['epoch']}, Batch {event['batch']}. "
            f"Loss: {event['loss']} (lower is better), Accuracy: {event['accuracy']} (higher is better). "
            f"The AI is getting smarter with each example!"), 'training'


def _epoch_complete(event):
    return (f"✅ <strong>Epoch {event['epoch']} completed!</strong> The AI has seen all the training examples "
            f"once. Average loss: {event['avgLoss']}, Average accuracy: {event['avgAccuracy']}. Ready for the "
            f"next round of learning!"), 'training'


def _training_complete(event):
    return (f"🏆 <strong>Training finished!</strong> The AI has learned to recognize digits! Final "
            f"performance: Loss {event['finalLoss']}, Accuracy {event['finalAccuracy']}. Now try drawing a "
            f"digit to test what it learned!"), 'success'


def _training_error(event):
    return f"⚠️ <strong>Training stopped.</strong> {event['message']}", 'info'


def _processing_error(event):
    return f"⚠️ <strong>Processing stopped.</strong> {event['message']}", 'info'


_NARRATORS = {
    'processing-start': _processing_start,
    'layer-processing-start': _layer_narration,
    'processing-complete': _processing_complete,
    'processing-error': _processing_error,
    'training-epoch-start': _epoch_start,
    'training-step': _training_step,
    'training-epoch-complete': _epoch_complete,
    'training-complete': _training_complete,
    'training-error': _training_error,
}


def narrate(event):
    """Live-status text for an event, as ``(html, category)``, or None."""
    narrator = _NARRATORS.get(event.get('type'))
    if narrator is None:
        return None
    return narrator(event)


def canvas_cleared():
    return ('🧹 Canvas cleared! Draw a digit (0-9) and then click "Process Through CNN" to see how the AI '
            'recognizes it.'), 'info'


def image_uploaded():
    return ('📁 <strong>Image uploaded!</strong> Your image has been loaded onto the canvas. Now click '
            '"Process Through CNN" to see how the AI analyzes it. For best results, use clear images of '
            'single digits (0-9).'), 'info'


def processing_requested():
    return ('🚀 <strong>Starting CNN analysis!</strong> Your drawing is being sent through the neural network. '
            'Watch as each layer processes and transforms your image to recognize what digit you drew.'), 'thinking'


def training_requested(epochs, learning_rate):
    return (f"🎓 <strong>Starting AI training!</strong> The neural network will study {epochs} rounds of "
            f"example images, learning to recognize digits. Learning rate: {format_rate(learning_rate)} "
            f"(how big steps it takes when learning). This is like teaching a student with flashcards!"), 'training'
