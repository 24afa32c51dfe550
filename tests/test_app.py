"""End-to-end tests for the HTTP and WebSocket surface."""

from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from cnn_visualizer.app import create_app, main
from cnn_visualizer.config import Settings

IMAGE = 'data:image/png;base64,AAAA'


@pytest.fixture
def client():
    app = create_app(Settings(engine='mock', pacing=0))
    with TestClient(app) as test_client:
        yield test_client


def receive_until(ws, kind):
    """Collect events up to and including the first one of ``kind``."""
    received = []
    while True:
        event = ws.receive_json()
        received.append(event)
        if event['type'] == kind:
            return received


class TestStaticFiles:
    def test_index(self, client):
        response = client.get('/')
        assert response.status_code == 200
        assert 'CNN Visualizer' in response.text

    def test_script(self, client):
        assert client.get('/script.js').status_code == 200


class TestWebSocket:
    """Tests for a browser talking to the server over /ws."""

    def test_init_on_connect(self, client):
        with client.websocket_connect('/ws') as ws:
            init = ws.receive_json()
        assert init['type'] == 'init'
        assert [layer['name'] for layer in init['layers']][:2] == ['Input', 'Conv1']

    def test_process_then_train(self, client):
        with client.websocket_connect('/ws') as ws:
            ws.receive_json()

            ws.send_json({'type': 'process-image', 'imageDataUrl': IMAGE})
            processed = receive_until(ws, 'processing-complete')
            engine_events = [e for e in processed if e['type'] != 'live-status']
            assert engine_events[0]['type'] == 'processing-start'
            assert sum(e['type'] == 'layer-processing-complete' for e in engine_events) == 7
            assert sum(processed[-1]['predictions']) == pytest.approx(1.0, abs=1e-4)

            ws.send_json({'type': 'start-training', 'epochs': 3, 'learningRate': 0.001})
            trained = receive_until(ws, 'training-complete')
            assert sum(e['type'] == 'training-epoch-complete' for e in trained) == 3
            assert not any(e['type'] == 'training-error' for e in trained)

    def test_chat_over_socket(self, client):
        with client.websocket_connect('/ws') as ws:
            ws.receive_json()
            ws.send_json({'type': 'chat-message', 'message': 'Is it training?'})
            reply = receive_until(ws, 'chat-response')[-1]
        assert "isn't currently training" in reply['response']

    def test_invalid_json_is_skipped(self, client):
        with client.websocket_connect('/ws') as ws:
            ws.receive_json()
            ws.send_text('{not json')
            ws.send_json({'type': 'update-parameters', 'learningRate': 0.005})
            confirmed = receive_until(ws, 'parameter-update-confirmed')[-1]
        assert confirmed['learningRate'] == 0.005

    def test_binary_frame_is_skipped(self, client):
        """Test that a binary frame is dropped and the socket keeps working."""
        with client.websocket_connect('/ws') as ws:
            ws.receive_json()
            ws.send_bytes(b'\x00\x01')
            ws.send_json({'type': 'process-image', 'imageDataUrl': IMAGE})
            processed = receive_until(ws, 'processing-complete')
        assert processed[-1]['type'] == 'processing-complete'
        assert not any(e['type'] == 'processing-error' for e in processed)

    def test_sessions_are_independent(self, client):
        with client.websocket_connect('/ws') as first, client.websocket_connect('/ws') as second:
            first.receive_json()
            second.receive_json()
            first.send_json({'type': 'update-parameters', 'learningRate': 0.05})
            receive_until(first, 'parameter-update-confirmed')
            assert len(client.app.state.sessions) == 2
            rates = sorted(session.engine.learning_rate for session in client.app.state.sessions.values())
        assert rates == [0.001, 0.05]


class TestCreateApp:
    def test_unknown_engine(self):
        with pytest.raises(ValueError, match='Unknown engine'):
            create_app(Settings(engine='tensorflow'))

    def test_custom_engine_factory(self):
        from cnn_visualizer.engines import MockEngine

        built = []

        def factory():
            engine = MockEngine(pacing=0, seed=3)
            built.append(engine)
            return engine

        with TestClient(create_app(Settings(), engine_factory=factory)) as test_client:
            with test_client.websocket_connect('/ws') as ws:
                ws.receive_json()
        assert len(built) == 1


class TestMain:
    def test_cli_overrides(self):
        with patch('cnn_visualizer.app.uvicorn.run') as run:
            main(['--port', '5001', '--engine', 'numpy', '--pacing', '0', '--log-level', 'warning'])
        app = run.call_args.args[0]
        assert run.call_args.kwargs['port'] == 5001
        assert run.call_args.kwargs['log_level'] == 'warning'
        assert app.state.settings.engine == 'numpy'
        assert app.state.settings.pacing == 0
