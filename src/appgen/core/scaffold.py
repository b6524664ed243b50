"""Fixed Next.js scaffold merged under every generated project."""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any

from appgen.core.errors import GenerationFailed
from appgen.core.workspace_store import MANIFEST_NAME

_PACKAGE_JSON: dict[str, Any] = {
    "name": "nextjs-app",
    "version": "0.1.0",
    "private": True,
    "scripts": {
        "dev": "next dev",
        "build": "next build",
        "start": "next start",
    },
    "dependencies": {
        "next": "14.0.4",
        "react": "^18.2.0",
        "react-dom": "^18.2.0",
    },
    "devDependencies": {
        "@types/node": "^20.10.6",
        "@types/react": "^18.2.46",
        "@types/react-dom": "^18.2.18",
        "autoprefixer": "^10.4.16",
        "postcss": "^8.4.32",
        "tailwindcss": "^3.4.0",
        "typescript": "^5.3.3",
    },
}

_TSCONFIG: dict[str, Any] = {
    "compilerOptions": {
        "target": "es5",
        "lib": ["dom", "dom.iterable", "esnext"],
        "allowJs": True,
        "skipLibCheck": True,
        "strict": True,
        "noEmit": True,
        "esModuleInterop": True,
        "module": "esnext",
        "moduleResolution": "bundler",
        "resolveJsonModule": True,
        "isolatedModules": True,
        "jsx": "preserve",
        "incremental": True,
        "plugins": [{"name": "next"}],
        "paths": {"@/*": ["./src/*"]},
    },
    "include": ["next-env.d.ts", "**/*.ts", "**/*.tsx", ".next/types/**/*.ts"],
    "exclude": ["node_modules"],
}

_NEXT_CONFIG = """/** @type {import('next').NextConfig} */
const nextConfig = {}

module.exports = nextConfig
"""

_TAILWIND_CONFIG = """import type { Config } from 'tailwindcss'

const config: Config = {
  content: [
    './src/pages/**/*.{js,ts,jsx,tsx,mdx}',
    './src/components/**/*.{js,ts,jsx,tsx,mdx}',
    './src/app/**/*.{js,ts,jsx,tsx,mdx}',
  ],
  theme: {
    extend: {},
  },
  plugins: [],
}

export default config
"""

_POSTCSS_CONFIG = """module.exports = {
  plugins: {
    tailwindcss: {},
    autoprefixer: {},
  },
}
"""

_GLOBALS_CSS = """@tailwind base;
@tailwind components;
@tailwind utilities;

:root {
  --foreground-rgb: 0, 0, 0;
  --background-rgb: 255, 255, 255;
}

body {
  color: rgb(var(--foreground-rgb));
  background: rgb(var(--background-rgb));
}
"""


def _dump(document: Mapping[str, Any]) -> str:
    return json.dumps(document, indent=2) + "\n"


SCAFFOLD_FILES: dict[str, str] = {
    MANIFEST_NAME: _dump(_PACKAGE_JSON),
    "next.config.js": _NEXT_CONFIG,
    "tailwind.config.ts": _TAILWIND_CONFIG,
    "postcss.config.js": _POSTCSS_CONFIG,
    "tsconfig.json": _dump(_TSCONFIG),
    "src/app/globals.css": _GLOBALS_CSS,
}


def _manifest_document(files: Mapping[str, str]) -> dict[str, Any]:
    raw = files.get(MANIFEST_NAME, SCAFFOLD_FILES[MANIFEST_NAME])
    try:
        document = json.loads(raw)
    except json.JSONDecodeError as exc:
        msg = f"Generated {MANIFEST_NAME} is not valid JSON: {exc.msg}"
        raise GenerationFailed(msg) from exc
    if not isinstance(document, dict):
        msg = f"Generated {MANIFEST_NAME} is not a JSON object"
        raise GenerationFailed(msg)
    return document


def merge_scaffold(generated: Mapping[str, str]) -> dict[str, str]:
    """Overlay generated files on the scaffold; generated content wins."""
    files = dict(SCAFFOLD_FILES)
    files.update(generated)
    _manifest_document(files)
    return files


def stamp_manifest(files: Mapping[str, str], *, project_id: str, port: int) -> dict[str, str]:
    """Rewrite the manifest name to the project id and record the port."""
    document = _manifest_document(files)
    document["name"] = project_id
    config = document.get("config")
    if not isinstance(config, dict):
        config = {}
    config["port"] = port
    document["config"] = config

    stamped = dict(files)
    stamped[MANIFEST_NAME] = _dump(document)
    return stamped
