"""Application skeleton for freshly provisioned sandboxes.

Renders the Vite + React + Tailwind starter files a session needs before its
dev server can start. Used only when no prebuilt template directory exists in
the sandbox image.
"""
