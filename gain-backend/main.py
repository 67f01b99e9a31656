from flask import Flask, request, jsonify
from flask_cors import CORS
import os
import shutil
import tempfile
import logging
from werkzeug.utils import secure_filename
import base64

import MP3_GAIN.pipeline as mp
from MP3_GAIN.config import GainOptions, get_processing_options
from MP3_GAIN.errors import Mp3GainError
from MP3_GAIN.gain_codec import Channel
from MP3_GAIN.transform import RangePolicy

logging.basicConfig(level=get_processing_options()['log_level'],
                    format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

app = Flask(__name__)
CORS(app)

MIME_TYPES = {
    mp.Capability.LOSSLESS_GAIN: 'audio/mpeg',
    mp.Capability.METADATA_ONLY: 'audio/mp4',
}


class UploadedAudio:
    """The uploaded `audioFile`, copied into a private temporary directory."""

    def __init__(self, storage):
        self.filename = secure_filename(storage.filename) or 'upload.mp3'
        self.directory = tempfile.mkdtemp(prefix='mp3gain-')
        self.path = os.path.join(self.directory, self.filename)
        storage.save(self.path)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        shutil.rmtree(self.directory, ignore_errors=True)

    def encoded(self) -> str:
        with open(self.path, 'rb') as f:
            return base64.b64encode(f.read()).decode('utf-8')


def _form_flag(name: str) -> bool:
    return request.form.get(name, 'false').lower() == 'true'


def _options() -> GainOptions:
    overrides = {}
    policy = request.form.get('policy')
    if policy:
        overrides['range_policy'] = RangePolicy(policy.lower())
    if 'preventClipping' in request.form:
        overrides['prevent_clipping'] = _form_flag('preventClipping')
    return GainOptions.from_env(**overrides)


def _uploaded():
    if 'audioFile' not in request.files:
        raise ValueError('Missing required file (audioFile)')
    audio_file = request.files['audioFile']
    if audio_file.filename == '':
        raise ValueError('No file selected')
    return UploadedAudio(audio_file)


def _respond(operation, mutating: bool):
    try:
        options = _options()
        with _uploaded() as upload:
            capability = mp.detect_capability(upload.path)
            result = operation(upload.path, options)
            body = {
                'success': True,
                'fileName': upload.filename,
                'capability': capability.value,
                'result': result,
            }
            if mutating:
                body['audioData'] = upload.encoded()
                body['mimeType'] = MIME_TYPES[capability]
            return jsonify(body)
    except (Mp3GainError, ValueError) as e:
        logger.warning("Request failed: %s", e)
        return jsonify({'success': False, 'error': str(e)}), 400
    except Exception as e:
        logger.exception("Unexpected error")
        return jsonify({'success': False, 'error': str(e)}), 500


@app.route('/')
def hello():
    return 'HELLO'


@app.route('/info', methods=['POST'])
def info():
    def run(path, options):
        result = {'tags': mp.read_gain_tags(path)}
        if mp.detect_capability(path) is mp.Capability.LOSSLESS_GAIN:
            result['frames'] = mp.inspect(path, options).to_dict()
        return result

    return _respond(run, mutating=False)


@app.route('/apply', methods=['POST'])
def apply():
    def run(path, options):
        gain_steps = request.form.get('gainSteps', '')
        gain_db = request.form.get('gainDb', '')
        channel = request.form.get('channel', '')
        channel = Channel.BOTH if channel in ('', 'both') else Channel(int(channel))
        if gain_steps:
            result = mp.apply_gain(path, steps=int(gain_steps), channel=channel, options=options)
        elif gain_db:
            result = mp.apply_gain(path, gain_db=float(gain_db), channel=channel, options=options)
        else:
            raise ValueError('Give gainSteps or gainDb')
        return result.to_dict()

    return _respond(run, mutating=True)


@app.route('/analyze', methods=['POST'])
def analyze():
    store_tags = _form_flag('storeTags')

    def run(path, options):
        report = mp.analyze(path, store_tags=store_tags, options=options)
        if path in report.failures:
            raise report.failures[path]
        return report.to_dict()

    return _respond(run, mutating=store_tags)


@app.route('/undo', methods=['POST'])
def undo():
    return _respond(lambda path, options: mp.undo(path, options).to_dict(), mutating=True)


@app.route('/delete-tags', methods=['POST'])
def delete_tags():
    return _respond(lambda path, options: {'removed': mp.delete_tags(path, options)}, mutating=True)


if __name__ == '__main__':
    app.run(debug=True, port=5000)
