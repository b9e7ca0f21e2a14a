from __future__ import annotations

import json
import re
import shlex
from dataclasses import dataclass

_SAFE_NAME_RE = re.compile(r"[^a-z0-9._-]+")

DEV_SERVER_LOG = "/tmp/dev-server.log"


@dataclass(frozen=True)
class SkeletonContext:
    package_name: str
    title: str
    dev_server_port: int
    dev_server_process: str = "vite"


def _normalize_package_name(s: str) -> str:
    s = (s or "").strip().lower().replace(" ", "-")
    s = _SAFE_NAME_RE.sub("-", s)
    s = re.sub(r"-+", "-", s).strip("-.")
    return s or "sandbox-app"


def build_skeleton_context(
    *, title: str | None = None, dev_server_port: int = 5173
) -> SkeletonContext:
    t = (str(title or "").strip() or "Sandbox App").strip()
    port = int(dev_server_port)
    if port <= 0 or port > 65535:
        raise ValueError(f"invalid dev server port: {dev_server_port}")
    return SkeletonContext(
        package_name=_normalize_package_name(t),
        title=t,
        dev_server_port=port,
    )


def render_package_json(ctx: SkeletonContext) -> str:
    pkg = {
        "name": ctx.package_name,
        "version": "0.0.0",
        "private": True,
        "type": "module",
        "scripts": {
            "dev": "vite",
            "build": "vite build",
            "preview": "vite preview",
        },
        "dependencies": {
            "react": "^18.2.0",
            "react-dom": "^18.2.0",
        },
        "devDependencies": {
            "@vitejs/plugin-react": "^4.0.0",
            "vite": "^4.3.9",
            "tailwindcss": "^3.3.0",
            "postcss": "^8.4.31",
            "autoprefixer": "^10.4.16",
        },
    }
    return json.dumps(pkg, indent=2) + "\n"


def render_vite_config(ctx: SkeletonContext) -> str:
    # HMR stays off: the preview is reached through a proxy that does not
    # forward the websocket, and reloads are driven externally.
    return (
        "import { defineConfig } from 'vite'\n"
        "import react from '@vitejs/plugin-react'\n"
        "\n"
        "export default defineConfig({\n"
        "  plugins: [react()],\n"
        "  server: {\n"
        "    host: '0.0.0.0',\n"
        f"    port: {ctx.dev_server_port},\n"
        "    strictPort: true,\n"
        "    hmr: false,\n"
        "    allowedHosts: true\n"
        "  }\n"
        "})\n"
    )


def render_tailwind_config(_ctx: SkeletonContext) -> str:
    return (
        "/** @type {import('tailwindcss').Config} */\n"
        "export default {\n"
        "  content: [\n"
        '    "./index.html",\n'
        '    "./src/**/*.{js,ts,jsx,tsx}",\n'
        "  ],\n"
        "  theme: {\n"
        "    extend: {},\n"
        "  },\n"
        "  plugins: [],\n"
        "}\n"
    )


def render_postcss_config(_ctx: SkeletonContext) -> str:
    return (
        "export default {\n"
        "  plugins: {\n"
        "    tailwindcss: {},\n"
        "    autoprefixer: {},\n"
        "  },\n"
        "}\n"
    )


def render_index_html(ctx: SkeletonContext) -> str:
    return (
        "<!DOCTYPE html>\n"
        '<html lang="en">\n'
        "  <head>\n"
        '    <meta charset="UTF-8" />\n'
        '    <meta name="viewport" content="width=device-width, initial-scale=1.0" />\n'
        f"    <title>{ctx.title}</title>\n"
        "  </head>\n"
        "  <body>\n"
        '    <div id="root"></div>\n'
        '    <script type="module" src="/src/main.jsx"></script>\n'
        "  </body>\n"
        "</html>\n"
    )


def render_main_jsx(_ctx: SkeletonContext) -> str:
    return (
        "import React from 'react'\n"
        "import ReactDOM from 'react-dom/client'\n"
        "import App from './App.jsx'\n"
        "import './index.css'\n"
        "\n"
        "ReactDOM.createRoot(document.getElementById('root')).render(\n"
        "  <React.StrictMode>\n"
        "    <App />\n"
        "  </React.StrictMode>,\n"
        ")\n"
    )


def render_app_jsx(_ctx: SkeletonContext) -> str:
    return (
        "function App() {\n"
        "  return (\n"
        '    <div className="min-h-screen bg-gray-900 text-white flex items-center justify-center p-4">\n'
        '      <div className="text-center max-w-2xl">\n'
        '        <p className="text-lg text-gray-400">\n'
        "          Sandbox ready. Start building your React app with Vite and Tailwind CSS.\n"
        "        </p>\n"
        "      </div>\n"
        "    </div>\n"
        "  )\n"
        "}\n"
        "\n"
        "export default App\n"
    )


def render_index_css(_ctx: SkeletonContext) -> str:
    return (
        "@tailwind base;\n"
        "@tailwind components;\n"
        "@tailwind utilities;\n"
        "\n"
        "body {\n"
        "  font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif;\n"
        "  background-color: rgb(17 24 39);\n"
        "}\n"
    )


def skeleton_files(ctx: SkeletonContext) -> dict[str, str]:
    """Relative path -> content for every skeleton file."""
    return {
        "package.json": render_package_json(ctx),
        "vite.config.js": render_vite_config(ctx),
        "tailwind.config.js": render_tailwind_config(ctx),
        "postcss.config.js": render_postcss_config(ctx),
        "index.html": render_index_html(ctx),
        "src/main.jsx": render_main_jsx(ctx),
        "src/App.jsx": render_app_jsx(ctx),
        "src/index.css": render_index_css(ctx),
    }


def dev_server_command(ctx: SkeletonContext) -> str:
    return f"npm run dev -- --host 0.0.0.0 --port {ctx.dev_server_port}"


def dev_server_kill_command(process_match: str) -> str:
    return f"pkill -f {shlex.quote(process_match)} || true"


def dev_server_launch_command(command: str, *, log_path: str = DEV_SERVER_LOG) -> str:
    return f"nohup {command} > {shlex.quote(log_path)} 2>&1 &"


def template_copy_command(template_dir: str, working_directory: str) -> str:
    src = template_dir.rstrip("/") + "/."
    return f"cp -a {shlex.quote(src)} {shlex.quote(working_directory.rstrip('/') + '/')}"
