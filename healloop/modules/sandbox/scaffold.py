"""
Baseline scaffold files per framework.

Generated projects regularly omit boilerplate (tsconfig, root layout, bundler
config). Those gaps are filled here so a build never fails on a missing
config file alone. Files the generator did emit are never overwritten.
"""

from dataclasses import dataclass
from typing import Callable, Dict, List, Set, Tuple

from healloop.schemas.sandbox import ProjectFile
from healloop.modules.sandbox.runtime_profile import Framework, normalize_runtime_path


@dataclass(frozen=True)
class ScaffoldEntry:
    path: str
    content: str
    # Any of these already present means the entry is skipped
    alternatives: Tuple[str, ...] = ()

    def satisfied_by(self, present: Set[str]) -> bool:
        return self.path in present or any(alt in present for alt in self.alternatives)


NEXTJS_PACKAGE_JSON = """{
  "name": "healloop-generated-app",
  "private": true,
  "scripts": {
    "dev": "next dev",
    "build": "next build",
    "start": "next start"
  },
  "dependencies": {
    "next": "16.1.6",
    "react": "19.2.3",
    "react-dom": "19.2.3"
  },
  "devDependencies": {
    "@types/node": "^20",
    "@types/react": "^19",
    "@types/react-dom": "^19",
    "typescript": "^5",
    "tailwindcss": "^3",
    "autoprefixer": "^10",
    "postcss": "^8"
  }
}
"""

NEXTJS_TSCONFIG = """{
  "compilerOptions": {
    "target": "ES2017",
    "lib": ["dom", "dom.iterable", "esnext"],
    "allowJs": true,
    "skipLibCheck": true,
    "strict": true,
    "noEmit": true,
    "esModuleInterop": true,
    "module": "esnext",
    "moduleResolution": "bundler",
    "resolveJsonModule": true,
    "isolatedModules": true,
    "jsx": "react-jsx",
    "incremental": true,
    "plugins": [{ "name": "next" }]
  },
  "include": ["next-env.d.ts", "**/*.ts", "**/*.tsx", ".next/types/**/*.ts"],
  "exclude": ["node_modules"]
}
"""

NEXTJS_ENV_DTS = """/// <reference types="next" />
/// <reference types="next/image-types/global" />
"""

TAILWIND_CSS = """@tailwind base;
@tailwind components;
@tailwind utilities;
"""

NEXTJS_LAYOUT = """import './globals.css'
import type { ReactNode } from 'react'

export default function RootLayout({ children }: { children: ReactNode }) {
  return (
    <html lang="en">
      <body>{children}</body>
    </html>
  )
}
"""

NEXTJS_PAGE = """export default function HomePage() {
  return (
    <main style={{ minHeight: '100vh', display: 'grid', placeItems: 'center' }}>
      <h1>Preview is starting</h1>
    </main>
  )
}
"""

TAILWIND_CONFIG = """/** @type {import('tailwindcss').Config} */
const config = {
  content: ['./app/**/*.{js,ts,jsx,tsx}', './src/**/*.{js,ts,jsx,tsx}', './index.html'],
  theme: {
    extend: {},
  },
  plugins: [],
}

export default config
"""

POSTCSS_CONFIG = """export default {
  plugins: {
    tailwindcss: {},
    autoprefixer: {},
  },
}
"""

VITE_PACKAGE_JSON = """{
  "name": "healloop-generated-app",
  "private": true,
  "type": "module",
  "scripts": {
    "dev": "vite",
    "build": "tsc -b && vite build",
    "preview": "vite preview"
  },
  "dependencies": {
    "react": "^19.0.0",
    "react-dom": "^19.0.0"
  },
  "devDependencies": {
    "@types/react": "^19",
    "@types/react-dom": "^19",
    "@vitejs/plugin-react": "^4",
    "typescript": "^5",
    "vite": "^6"
  }
}
"""

VITE_INDEX_HTML = """<!doctype html>
<html lang="en">
  <head>
    <meta charset="UTF-8" />
    <meta name="viewport" content="width=device-width, initial-scale=1.0" />
    <title>Preview</title>
  </head>
  <body>
    <div id="root"></div>
    <script type="module" src="/src/main.tsx"></script>
  </body>
</html>
"""

VITE_MAIN = """import { StrictMode } from 'react'
import { createRoot } from 'react-dom/client'
import './index.css'
import App from './App'

createRoot(document.getElementById('root')!).render(
  <StrictMode>
    <App />
  </StrictMode>,
)
"""

VITE_APP = """export default function App() {
  return <h1>Preview is starting</h1>
}
"""

VITE_INDEX_CSS = """:root {
  font-family: system-ui, sans-serif;
}
"""

VITE_CONFIG = """import { defineConfig } from 'vite'
import react from '@vitejs/plugin-react'

export default defineConfig({
  plugins: [react()],
  server: { host: '0.0.0.0' },
})
"""

VITE_TSCONFIG = """{
  "compilerOptions": {
    "target": "ES2020",
    "lib": ["ES2020", "DOM", "DOM.Iterable"],
    "module": "ESNext",
    "moduleResolution": "bundler",
    "jsx": "react-jsx",
    "strict": true,
    "skipLibCheck": true,
    "noEmit": true,
    "isolatedModules": true
  },
  "include": ["src"]
}
"""


def _nextjs_entries(present: Set[str]) -> List[ScaffoldEntry]:
    app_root = "src/app" if any(p.startswith("src/app/") for p in present) else "app"
    return [
        ScaffoldEntry("package.json", NEXTJS_PACKAGE_JSON),
        ScaffoldEntry("tsconfig.json", NEXTJS_TSCONFIG, ("jsconfig.json",)),
        ScaffoldEntry("next-env.d.ts", NEXTJS_ENV_DTS),
        ScaffoldEntry(f"{app_root}/globals.css", TAILWIND_CSS),
        ScaffoldEntry(f"{app_root}/layout.tsx", NEXTJS_LAYOUT, (f"{app_root}/layout.jsx", f"{app_root}/layout.js")),
        ScaffoldEntry(f"{app_root}/page.tsx", NEXTJS_PAGE, (f"{app_root}/page.jsx", f"{app_root}/page.js")),
        ScaffoldEntry("tailwind.config.ts", TAILWIND_CONFIG, ("tailwind.config.js",)),
        ScaffoldEntry("postcss.config.mjs", POSTCSS_CONFIG, ("postcss.config.js", "postcss.config.cjs")),
    ]


def _vite_entries(present: Set[str]) -> List[ScaffoldEntry]:
    return [
        ScaffoldEntry("package.json", VITE_PACKAGE_JSON),
        ScaffoldEntry("index.html", VITE_INDEX_HTML),
        ScaffoldEntry("src/main.tsx", VITE_MAIN, ("src/main.jsx", "src/main.ts", "src/main.js")),
        ScaffoldEntry("src/App.tsx", VITE_APP, ("src/App.jsx",)),
        ScaffoldEntry("src/index.css", VITE_INDEX_CSS),
        ScaffoldEntry("vite.config.ts", VITE_CONFIG, ("vite.config.js", "vite.config.mjs")),
        ScaffoldEntry("tsconfig.json", VITE_TSCONFIG, ("jsconfig.json",)),
    ]


SCAFFOLDS: Dict[Framework, Callable[[Set[str]], List[ScaffoldEntry]]] = {
    Framework.NEXTJS: _nextjs_entries,
    Framework.VITE: _vite_entries,
}


def missing_scaffold_files(framework: Framework, files: List[ProjectFile]) -> List[ProjectFile]:
    """Return the baseline files the generated set lacks for this framework"""
    present = {normalize_runtime_path(f.path) for f in files}
    entries = SCAFFOLDS[framework](present)
    return [
        ProjectFile(path=entry.path, content=entry.content)
        for entry in entries
        if not entry.satisfied_by(present)
    ]
