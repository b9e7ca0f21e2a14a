import json
import unittest

from src.platform_scaffold.scaffold import (
    build_skeleton_context,
    dev_server_command,
    dev_server_kill_command,
    dev_server_launch_command,
    render_index_html,
    render_package_json,
    render_vite_config,
    skeleton_files,
    template_copy_command,
)


class TestAppSkeleton(unittest.TestCase):
    def test_context_normalizes_package_name(self):
        ctx = build_skeleton_context(title="My Cool App!", dev_server_port=5173)
        self.assertEqual(ctx.package_name, "my-cool-app")
        self.assertEqual(ctx.title, "My Cool App!")

    def test_invalid_port_rejected(self):
        with self.assertRaises(ValueError):
            build_skeleton_context(dev_server_port=0)

    def test_package_json_is_valid_and_has_dev_script(self):
        pkg = json.loads(render_package_json(build_skeleton_context()))
        self.assertEqual(pkg["scripts"]["dev"], "vite")
        self.assertIn("react", pkg["dependencies"])
        self.assertIn("tailwindcss", pkg["devDependencies"])

    def test_vite_config_pins_port_and_host(self):
        text = render_vite_config(build_skeleton_context(dev_server_port=4000))
        self.assertIn("port: 4000", text)
        self.assertIn("host: '0.0.0.0'", text)
        self.assertIn("strictPort: true", text)
        self.assertIn("hmr: false", text)

    def test_index_html_loads_entry(self):
        text = render_index_html(build_skeleton_context(title="Demo"))
        self.assertIn("<title>Demo</title>", text)
        self.assertIn('src="/src/main.jsx"', text)

    def test_skeleton_file_set(self):
        files = skeleton_files(build_skeleton_context())
        self.assertEqual(
            set(files),
            {
                "package.json",
                "vite.config.js",
                "tailwind.config.js",
                "postcss.config.js",
                "index.html",
                "src/main.jsx",
                "src/App.jsx",
                "src/index.css",
            },
        )
        self.assertIn("@tailwind base;", files["src/index.css"])

    def test_dev_server_commands(self):
        ctx = build_skeleton_context(dev_server_port=5173)
        self.assertEqual(
            dev_server_command(ctx), "npm run dev -- --host 0.0.0.0 --port 5173"
        )
        self.assertEqual(dev_server_kill_command("vite"), "pkill -f vite || true")
        launch = dev_server_launch_command("npm run dev")
        self.assertTrue(launch.startswith("nohup npm run dev > "))
        self.assertTrue(launch.endswith("2>&1 &"))
        self.assertEqual(
            template_copy_command("/opt/tpl/", "/workspace"),
            "cp -a /opt/tpl/. /workspace/",
        )


if __name__ == "__main__":
    unittest.main()
