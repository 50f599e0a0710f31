"""pool2go — proximity relay server.

Clients report their location over a TCP socket and get back the location of
one other client within roughly 200 metres, or an out-of-bounds sentinel.

Quickstart::

    from pool2go.server import RelayServer
    from pool2go.client import lookup

    server = RelayServer()
    await server.start(8082, "./data/pool2go.sqlite")
    nearby = await lookup("localhost", 8082, 5.001, 5.001)
"""

__version__ = "1.0.0"
