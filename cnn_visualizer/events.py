"""Wire events sent from the server to the browser.

Every event is a plain dict whose ``type`` key names the event; the rest of
the keys are its payload and go out verbatim as JSON. Loss and accuracy are
fixed 4-decimal strings.
"""
import numpy as np

from .layers import layers_as_dicts

TRAINING_ERROR = 'training-error'
PROCESSING_ERROR = 'processing-error'
PARAMETER_UPDATE_ERROR = 'parameter-update-error'


def _fixed(value):
    return f"{float(value):.4f}"


def format_rate(value):
    """Learning rate as plain decimal text, e.g. 1e-05 as '0.00001'."""
    if isinstance(value, float):
        return np.format_float_positional(value, trim='-')
    return str(value)


def init(layers, epochs, learning_rate):
    return {
        'type': 'init',
        'layers': layers_as_dicts(layers),
        'defaults': {'epochs': epochs, 'learningRate': learning_rate},
    }


def training_epoch_start(epoch, total):
    return {'type': 'training-epoch-start', 'epoch': epoch, 'total': total}


def training_step(epoch, batch, loss, accuracy):
    return {
        'type': 'training-step',
        'epoch': epoch,
        'batch': batch,
        'loss': _fixed(loss),
        'accuracy': _fixed(accuracy),
    }


def weight_update(layer_index, layer_name, epoch, batch, stats):
    return {
        'type': 'weight-update',
        'layerIndex': layer_index,
        'layerName': layer_name,
        'epoch': epoch,
        'batch': batch,
        'weightStats': stats,
    }


def training_epoch_complete(epoch, avg_loss, avg_accuracy):
    return {
        'type': 'training-epoch-complete',
        'epoch': epoch,
        'avgLoss': _fixed(avg_loss),
        'avgAccuracy': _fixed(avg_accuracy),
    }


def training_complete(final_loss, final_accuracy, message='CNN training completed successfully!'):
    return {
        'type': 'training-complete',
        'finalLoss': _fixed(final_loss),
        'finalAccuracy': _fixed(final_accuracy),
        'message': message,
    }


def _layer_summary(layer):
    return {'name': layer.name, 'type': layer.kind.value, 'outputShape': list(layer.output_shape)}


def processing_start(total_layers):
    return {'type': 'processing-start', 'totalLayers': total_layers}


def layer_processing_start(layer_index, layer, progress):
    return {
        'type': 'layer-processing-start',
        'layerIndex': layer_index,
        'layer': _layer_summary(layer),
        'progress': float(progress),
    }


def filter_activation(layer_index, filter_index, activation, feature_map):
    return {
        'type': 'filter-activation',
        'layerIndex': layer_index,
        'filterIndex': filter_index,
        'activation': float(activation),
        'featureMap': [[float(value) for value in row] for row in feature_map],
    }


def layer_processing_complete(layer_index, layer, activation_data, computation_time):
    return {
        'type': 'layer-processing-complete',
        'layerIndex': layer_index,
        'layer': _layer_summary(layer),
        'activationData': [float(value) for value in activation_data],
        'computationTime': float(computation_time),
    }


def processing_complete(predictions):
    predictions = [float(p) for p in predictions]
    predicted_class = int(np.argmax(predictions))
    return {
        'type': 'processing-complete',
        'predictions': predictions,
        'predictedClass': predicted_class,
        'confidence': predictions[predicted_class],
    }


def error(event_type, message):
    return {'type': event_type, 'message': message}


def parameter_update_confirmed(params):
    return dict(params, type='parameter-update-confirmed')


def live_status(text, category):
    return {'type': 'live-status', 'text': text, 'category': category}


def chat_response(response=None, error=None):
    if error is not None:
        return {'type': 'chat-response', 'error': error}
    return {'type': 'chat-response', 'response': response}
