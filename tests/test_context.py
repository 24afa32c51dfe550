"""Tests for the per-session application context."""

import dataclasses

import pytest

from cnn_visualizer import events
from cnn_visualizer.context import (
    EXPLANATION_LOG_SIZE,
    INTERACTION_LOG_SIZE,
    Snapshot,
)
from cnn_visualizer.layers import LAYERS


class TestLogs:
    """Tests for the bounded interaction and explanation logs."""

    def test_interaction_log_keeps_last_50(self, context):
        for i in range(INTERACTION_LOG_SIZE + 10):
            context.record_interaction('tick', {'i': i})
        entries = context.snapshot().interactions
        assert len(entries) == 50
        assert entries[0]['data']['i'] == 10
        assert entries[-1]['data']['i'] == 59

    def test_explanation_log_keeps_last_20(self, context):
        for i in range(EXPLANATION_LOG_SIZE + 5):
            context.record_explanation(f'step {i}', 'processing')
        snapshot = context.snapshot()
        assert len(snapshot.explanations) == 20
        assert snapshot.explanations[0]['text'] == 'step 5'
        assert snapshot.latest_explanation == 'step 24'

    def test_rejects_unknown_category(self, context):
        with pytest.raises(ValueError):
            context.record_explanation('hi', 'warning')

    def test_rejects_unknown_sender(self, context):
        with pytest.raises(ValueError):
            context.record_chat('system', 'hi')

    def test_timestamps_from_clock(self, context, clock):
        context.record_interaction('tick')
        assert context.snapshot().interactions[0]['timestamp'] == 1_700_000_001.0


class TestUserActions:
    def test_draw_started_once(self, context):
        assert context.draw_started() is True
        assert context.draw_started() is False
        actions = [entry['action'] for entry in context.snapshot().interactions]
        assert actions == ['started_drawing']

    def test_clear_canvas_idempotent(self, context):
        """Test that clearing twice leaves the same state and logs both clears."""
        context.draw_started()
        context.clear_canvas()
        first = context.snapshot()
        context.clear_canvas()
        second = context.snapshot()
        assert first.has_drawing is second.has_drawing is False
        assert first.last_prediction is second.last_prediction is None
        assert second.focus_layer_index == -1
        assert [e['action'] for e in second.interactions][-2:] == ['canvas_cleared', 'canvas_cleared']

    def test_image_uploaded(self, context):
        context.image_uploaded('seven.png')
        snapshot = context.snapshot()
        assert snapshot.has_drawing
        assert snapshot.interactions[-1]['data'] == {'fileName': 'seven.png'}

    def test_open_help(self, context):
        context.open_help('loss')
        snapshot = context.snapshot()
        assert snapshot.open_help_topics == ('loss',)
        assert snapshot.interactions[-1]['action'] == 'info_modal_opened'
        assert snapshot.interactions[-1]['data'] == {'infoKey': 'loss'}

    def test_parameters_changed(self, context):
        context.parameters_changed({'learningRate': 0.01})
        assert context.training['learningRate'] == 0.01
        assert context.training['epochs'] == 5


class TestObserve:
    """Tests for folding engine events into the context."""

    def test_training_progress(self, context):
        context.start_training(3, 0.002)
        context.observe(events.training_epoch_start(1, 3))
        context.observe(events.training_step(1, 4, 1.5, 0.25))
        training = context.snapshot().training
        assert training['isTraining'] is True
        assert training['epochs'] == 3
        assert training['currentBatch'] == 4
        assert training['lastLoss'] == '1.5000'
        context.observe(events.training_complete(0.1, 0.9))
        assert context.training['isTraining'] is False

    def test_processing_focus(self, context):
        context.start_processing()
        context.observe(events.layer_processing_start(2, LAYERS[2], 2 / 7 * 100))
        assert context.focus_layer_index == 2
        assert context.processing['currentLayer'] == 'Pool1'
        context.observe(events.layer_processing_complete(2, LAYERS[2], [0.5], 10))
        assert context.processing['activations'] == {2: [0.5]}

    def test_processing_complete(self, context):
        context.start_processing()
        context.observe(events.layer_processing_start(6, LAYERS[6], 6 / 7 * 100))
        predictions = [0.05] * 9 + [0.55]
        context.observe(events.processing_complete(predictions))
        snapshot = context.snapshot()
        assert snapshot.focus_layer_index == -1
        assert snapshot.processing['isProcessing'] is False
        assert snapshot.last_prediction['predictedClass'] == 9
        assert snapshot.last_prediction['confidence'] == pytest.approx(0.55)

    def test_failures_reset_flags(self, context):
        context.start_training(2, 0.001)
        context.training_failed()
        context.start_processing()
        context.processing_failed()
        assert not context.training['isTraining']
        assert not context.processing['isProcessing']

    def test_ignores_unrelated_events(self, context):
        before = context.snapshot()
        context.observe(events.weight_update(1, 'Conv1', 1, 1, {}))
        assert context.snapshot().training == before.training


class TestSnapshot:
    def test_snapshot_is_frozen(self, context):
        snapshot = context.snapshot()
        with pytest.raises(dataclasses.FrozenInstanceError):
            snapshot.has_drawing = True
        with pytest.raises(TypeError):
            snapshot.training['epochs'] = 1

    def test_snapshot_detached_from_context(self, context):
        snapshot = context.snapshot()
        context.draw_started()
        context.record_explanation('later', 'info')
        assert snapshot.has_drawing is False
        assert snapshot.explanations == ()

    def test_from_payload(self):
        """Test rebuilding a snapshot from the browser context shape."""
        payload = {
            'appContext': {
                'hasDrawing': True,
                'lastPrediction': {'predictedClass': 3, 'confidence': 0.8, 'predictions': [0.0] * 10},
                'currentTraining': {'isTraining': False, 'epochs': 7, 'learningRate': 0.01},
                'userInteractions': [{'timestamp': 1_700_000_000_000, 'action': 'started_drawing', 'data': {}}],
                'liveExplanationHistory': [{'timestamp': 1_700_000_001_000, 'type': 'success', 'text': 'done'}],
                'openInfoModals': ['loss'],
                'chatHistory': [{'sender': 'user', 'message': 'hi', 'timestamp': 1_700_000_002_000}],
            },
            'networkLayers': [layer.to_dict() for layer in LAYERS],
            'currentLayerIndex': 4,
        }
        snapshot = Snapshot.from_payload(payload, clock=lambda: 42.0)
        assert snapshot.has_drawing is True
        assert snapshot.last_prediction['predictedClass'] == 3
        assert snapshot.training['epochs'] == 7
        assert snapshot.training['currentEpoch'] == 0
        assert snapshot.layers == LAYERS
        assert snapshot.focus_layer_index == 4
        assert snapshot.interactions[0]['timestamp'] == 1_700_000_000.0
        assert snapshot.explanations[0]['category'] == 'success'
        assert snapshot.chat_history[0]['text'] == 'hi'
        assert snapshot.open_help_topics == ('loss',)
        assert snapshot.taken_at == 42.0

    def test_from_empty_payload(self):
        snapshot = Snapshot.from_payload({})
        assert snapshot.layers == LAYERS
        assert snapshot.focus_layer_index == -1
        assert snapshot.last_prediction is None
