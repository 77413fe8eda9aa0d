"""
JSON Server - Handler Modules
===============================
Optional handler modules. Each exposes install_handlers(server) and is
installed explicitly, for example:

    server.install_handlers("jsonserver.handlers.fs")

Modules:
    fs.py   -> "stat" and "readdir" (read-only filesystem queries)
    demo.py -> "circle", "timeIs" and "top" examples
"""
