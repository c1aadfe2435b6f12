import asyncio, json, argparse, wave, websockets, time
from pathlib import Path
from urllib.parse import urlencode

from backend.receptionist.audio import AudioReassembler
from backend.receptionist.errors import ProtocolViolation

SAMPLE_RATE = 16000


def read_wav_bytes(path: Path):
    with wave.open(str(path), 'rb') as w:
        if w.getsampwidth() != 2 or w.getframerate() != SAMPLE_RATE or w.getnchannels() != 1:
            raise SystemExit('WAV must be mono 16kHz 16-bit PCM')
        return w.readframes(w.getnframes())


async def send_audio(ws, pcm: bytes, frame_ms: int, trailing_silence_s: float):
    frame_bytes = int(SAMPLE_RATE * 2 * frame_ms / 1000)
    # trailing silence lets the recognizer close the utterance
    pcm = pcm + b'\x00\x00' * int(SAMPLE_RATE * trailing_silence_s)
    for i in range(0, len(pcm), frame_bytes):
        await ws.send(pcm[i:i+frame_bytes])
        await asyncio.sleep(frame_ms/1000.0 * 0.9)  # pace a bit faster than realtime


async def run_call(pcm: bytes, uri: str, frame_ms: int, out: Path, trailing_silence_s: float, timeout: float):
    reassembler = AudioReassembler()
    async with websockets.connect(uri, max_size=2**23) as ws:
        await ws.send(json.dumps({'type': 'start', 'sampleRate': SAMPLE_RATE, 'channels': 1}))
        t_start = time.time()
        sender = asyncio.create_task(send_audio(ws, pcm, frame_ms, trailing_silence_s))
        try:
            while True:
                try:
                    raw = await asyncio.wait_for(ws.recv(), timeout=timeout)
                except asyncio.TimeoutError:
                    print('Timeout waiting for reply audio')
                    break
                msg = json.loads(raw)
                mtype = msg.get('type')
                if mtype == 'audio_chunk':
                    try:
                        reassembler.add_message(msg)
                    except ProtocolViolation as e:
                        print('PROTOCOL', e)
                        break
                    continue
                print('EVENT', raw)
                if mtype == 'error' and not msg.get('recoverable', True):
                    break
                if mtype == 'audio_end':
                    print(f'Reply after {time.time()-t_start:.2f}s, {reassembler.expected_sequence} chunks')
                    break
        finally:
            sender.cancel()
            await asyncio.gather(sender, return_exceptions=True)
        await ws.send(json.dumps({'type': 'stop'}))
    audio = reassembler.audio()
    if audio:
        out.write_bytes(audio)
        print(f'Wrote {len(audio)} bytes to {out}')


async def main():
    ap = argparse.ArgumentParser()
    ap.add_argument('wav', type=Path, help='Mono 16k 16-bit PCM WAV file')
    ap.add_argument('--uri', default='ws://127.0.0.1:8000/ws')
    ap.add_argument('--session-id', default=None)
    ap.add_argument('--token', default=None)
    ap.add_argument('--frame-ms', type=int, default=120)
    ap.add_argument('--silence-s', type=float, default=2.0)
    ap.add_argument('--timeout', type=float, default=15.0)
    ap.add_argument('--out', type=Path, default=Path('reply.mp3'))
    args = ap.parse_args()
    uri = args.uri
    if args.session_id and args.token:
        uri = f"{uri}?{urlencode({'session_id': args.session_id, 'token': args.token})}"
    pcm = read_wav_bytes(args.wav)
    await run_call(pcm, uri, args.frame_ms, args.out, args.silence_s, args.timeout)


if __name__ == '__main__':
    asyncio.run(main())
