from __future__ import annotations

from pydantic import BaseModel


class FrameworkPreset(BaseModel):
    """Default install/build/start configuration for a known framework."""

    name: str
    framework: str
    install_command: str = ""
    build_command: str = ""
    start_command: str = ""
    port: int = 0


FRAMEWORK_PRESETS: dict[str, FrameworkPreset] = {
    "nextjs": FrameworkPreset(
        name="Next.js",
        framework="nextjs",
        install_command="npm install",
        build_command="npm run build",
        start_command="npm start",
        port=3000,
    ),
    "nuxt": FrameworkPreset(
        name="Nuxt",
        framework="nuxt",
        install_command="npm install",
        build_command="npm run build",
        start_command="node .output/server/index.mjs",
        port=3000,
    ),
    # Static SPA: built files only, no long-running process.
    "vite": FrameworkPreset(
        name="Vite (SPA)",
        framework="vite",
        install_command="npm install",
        build_command="npm run build",
    ),
    "remix": FrameworkPreset(
        name="Remix",
        framework="remix",
        install_command="npm install",
        build_command="npm run build",
        start_command="npm start",
        port=3000,
    ),
    "express": FrameworkPreset(
        name="Express.js",
        framework="express",
        install_command="npm install",
        start_command="node index.js",
        port=3000,
    ),
    "go": FrameworkPreset(
        name="Go",
        framework="go",
        build_command="go build -o app .",
        start_command="./app",
        port=8080,
    ),
    "laravel": FrameworkPreset(
        name="Laravel",
        framework="laravel",
        install_command="composer install --no-dev",
        build_command="php artisan optimize",
        start_command="php-fpm",
        port=9000,
    ),
    "flask": FrameworkPreset(
        name="Flask",
        framework="flask",
        install_command="pip install -r requirements.txt",
        start_command="gunicorn app:app",
        port=8000,
    ),
    "django": FrameworkPreset(
        name="Django",
        framework="django",
        install_command="pip install -r requirements.txt",
        build_command="python manage.py collectstatic --noinput",
        start_command="gunicorn config.wsgi:application",
        port=8000,
    ),
    "custom": FrameworkPreset(name="Custom", framework="custom"),
}
