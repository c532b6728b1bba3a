import argparse, asyncio, base64, json, sys
from pathlib import Path
import websockets

CONNECT_TIMEOUT_S = 5
INIT_TIMEOUT_S = 10
PROCESSING_TIMEOUT_S = 30


async def wait_for_type(ws, wanted: set, timeout: float) -> dict:
    """Read frames until one of the wanted types (or an error) arrives."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        remaining = deadline - loop.time()
        if remaining <= 0:
            raise asyncio.TimeoutError
        msg = json.loads(await asyncio.wait_for(ws.recv(), timeout=remaining))
        print('EVENT', {k: (v[:40] + '...' if isinstance(v, str) and len(v) > 40 else v) for k, v in msg.items()})
        if msg.get('type') in wanted or msg.get('type') == 'error':
            return msg


async def run(uri: str, user_id: str, friend_id: str, clip: Path, reply_out: Path | None) -> int:
    print('Connecting to', uri)
    try:
        ws = await websockets.connect(uri, open_timeout=CONNECT_TIMEOUT_S, max_size=2**24)
    except (OSError, asyncio.TimeoutError) as e:
        print('Connection failed:', e)
        return 2
    async with ws:
        await ws.send(json.dumps({'type': 'init', 'userId': user_id, 'friendId': friend_id}))
        try:
            ready = await wait_for_type(ws, {'ready'}, INIT_TIMEOUT_S)
        except asyncio.TimeoutError:
            print('Session initialization timeout')
            return 3
        if ready['type'] == 'error':
            return 3
        await ws.send(json.dumps({'type': 'audio', 'data': base64.b64encode(clip.read_bytes()).decode()}))
        try:
            result = await wait_for_type(ws, {'response'}, PROCESSING_TIMEOUT_S)
        except asyncio.TimeoutError:
            print('Audio processing timeout')
            return 4
        if result['type'] == 'error':
            return 4
        print('Transcript:', result['transcript'])
        print('Reply:', result['text'])
        if reply_out and result.get('audioBuffer'):
            reply_out.write_bytes(base64.b64decode(result['audioBuffer']))
            print('Reply audio written to', reply_out)
    return 0


if __name__ == '__main__':
    p = argparse.ArgumentParser(description='Send one recorded clip to the voice relay')
    p.add_argument('clip', type=Path)
    p.add_argument('--uri', default='ws://127.0.0.1:8000/ws')
    p.add_argument('--user', default='u1')
    p.add_argument('--friend', default='f1')
    p.add_argument('--reply-out', type=Path)
    a = p.parse_args()
    sys.exit(asyncio.run(run(a.uri, a.user, a.friend, a.clip, a.reply_out)))
