import json
import tempfile
import unittest
from pathlib import Path

import httpx

from directus_to_data import (
    DirectusClient,
    ExportReport,
    SchemaApplyMisuseError,
    directus_to_data,
    main,
)


class TestExportCollections(unittest.IsolatedAsyncioTestCase):
    """
    Tests fetching, writing, and asset downloading against a mocked Directus.
    """

    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.tmp_dir: Path = Path(self.tmp.name)
        self.requests: list[httpx.Request] = []
        self.items: dict[str, object] = {'Posts': [{'id': 1}]}
        self.assets: dict[str, bytes] = {}
        self.flaky_paths: set[str] = set()

    def tearDown(self) -> None:
        self.tmp.cleanup()

    def make_client(self, token: str = '') -> DirectusClient:
        def handler(request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            path: str = request.url.path
            if path in self.flaky_paths:
                self.flaky_paths.discard(path)
                return httpx.Response(503)
            if path.startswith('/items/'):
                name: str = path.removeprefix('/items/')
                if name not in self.items:
                    return httpx.Response(403, json={'errors': [{'message': 'forbidden'}]})
                return httpx.Response(200, json={'data': self.items[name]})
            if path.startswith('/assets/'):
                asset_id: str = path.removeprefix('/assets/')
                return httpx.Response(200, content=self.assets.get(asset_id, b''))
            return httpx.Response(404)

        transport = httpx.MockTransport(handler)
        headers: dict[str, str] = {'authorization': f'Bearer {token}'} if token else {}
        return DirectusClient(httpx.AsyncClient(transport=transport, base_url='https://cms.example.com', headers=headers))

    def common_params(self) -> dict:
        return {'config_filename': str(self.tmp_dir / 'missing.json'), 'environ': {}, 'stagger_seconds': 0}

    async def test_posts_end_to_end(self) -> None:
        """
        Checks that `Posts` is written to out/Posts.json and the callback gets the data once.
        """
        received: list[object] = []
        client: DirectusClient = self.make_client()
        report: ExportReport | None = await directus_to_data(
            collection_name='Posts',
            collection_output=str(self.tmp_dir / 'out' / '{{collectionName}}.json'),
            prettify=0,
            callback=received.append,
            client=client,
            **self.common_params(),
        )
        output_path: Path = self.tmp_dir / 'out' / 'Posts.json'
        self.assertEqual(output_path.read_text(encoding='utf-8'), '[{"id":1}]')
        self.assertEqual(received, [[{'id': 1}]])
        assert report is not None
        self.assertEqual(report.exported, ['Posts'])
        self.assertTrue(report.ok)
        await client.aclose()

    async def test_field_selector_is_not_part_of_collection_path(self) -> None:
        client: DirectusClient = self.make_client()
        await directus_to_data(
            collection_name=['Posts:id,title'],
            collection_output=str(self.tmp_dir / '{{collectionName}}.json'),
            client=client,
            **self.common_params(),
        )
        self.assertEqual(self.requests[0].url.path, '/items/Posts')
        self.assertEqual(self.requests[0].url.params.get('fields'), 'id,title')
        self.assertTrue((self.tmp_dir / 'Posts.json').exists())
        await client.aclose()

    async def test_prettified_output(self) -> None:
        client: DirectusClient = self.make_client()
        await directus_to_data(
            collection_name='Posts',
            collection_output=str(self.tmp_dir / '{{collectionName}}.json'),
            client=client,
            **self.common_params(),
        )
        computed: str = (self.tmp_dir / 'Posts.json').read_text(encoding='utf-8')
        self.assertEqual(computed, json.dumps([{'id': 1}], indent=4))
        await client.aclose()

    async def test_assets_downloaded(self) -> None:
        """
        Checks that every file object in the data is downloaded to its rendered path.
        """
        self.items['Posts'] = [
            {'id': 1, 'cover': {'id': 'f1', 'filename_download': 'cover.png'}},
            {'id': 2, 'cover': {'id': 'f2', 'filename_download': 'other.png'}},
        ]
        self.assets = {'f1': b'\x89PNG-one', 'f2': b'\x89PNG-two'}
        client: DirectusClient = self.make_client()
        report: ExportReport | None = await directus_to_data(
            collection_name='Posts',
            collection_output='none',
            assets_output=str(self.tmp_dir / 'assets' / '{{filename}}'),
            client=client,
            **self.common_params(),
        )
        self.assertEqual((self.tmp_dir / 'assets' / 'cover.png').read_bytes(), b'\x89PNG-one')
        self.assertEqual((self.tmp_dir / 'assets' / 'other.png').read_bytes(), b'\x89PNG-two')
        self.assertFalse(any(self.tmp_dir.glob('*.json')))
        assert report is not None
        self.assertEqual(report.assets_written, 2)
        self.assertEqual(report.asset_bytes, 16)
        await client.aclose()

    async def test_empty_asset_reported_without_stopping_siblings(self) -> None:
        """
        Checks that an asset with no content is reported while its sibling and the JSON are still written.
        """
        self.items['Posts'] = [
            {'id': 1, 'cover': {'id': 'empty', 'filename_download': 'empty.png'}},
            {'id': 2, 'cover': {'id': 'f2', 'filename_download': 'ok.png'}},
        ]
        self.assets = {'f2': b'data'}
        client: DirectusClient = self.make_client()
        with self.assertLogs('directus_to_data', level='WARNING'):
            report: ExportReport | None = await directus_to_data(
                collection_name='Posts',
                collection_output=str(self.tmp_dir / '{{collectionName}}.json'),
                assets_output=str(self.tmp_dir / '{{filename}}'),
                client=client,
                **self.common_params(),
            )
        self.assertTrue((self.tmp_dir / 'ok.png').exists())
        self.assertFalse((self.tmp_dir / 'empty.png').exists())
        self.assertTrue((self.tmp_dir / 'Posts.json').exists())
        assert report is not None
        self.assertEqual(len(report.write_errors), 1)
        self.assertFalse(report.ok)
        await client.aclose()

    async def test_json_write_failure_keeps_assets_and_callback(self) -> None:
        """
        Checks that a collection JSON that can't be written is recorded, while assets are still
        downloaded and the callback still gets the data.
        """
        self.items['Posts'] = [{'id': 1, 'cover': {'id': 'f1', 'filename_download': 'cover.png'}}]
        self.assets = {'f1': b'png'}
        blocker: Path = self.tmp_dir / 'blocker'
        blocker.write_text('not a directory', encoding='utf-8')
        received: list[object] = []
        client: DirectusClient = self.make_client()
        with self.assertLogs('directus_to_data', level='ERROR'):
            report: ExportReport | None = await directus_to_data(
                collection_name='Posts',
                collection_output=str(blocker / '{{collectionName}}.json'),
                assets_output=str(self.tmp_dir / 'assets' / '{{filename}}'),
                callback=received.append,
                client=client,
                **self.common_params(),
            )
        assert report is not None
        self.assertEqual(len(report.write_errors), 1)
        self.assertEqual(report.exported, ['Posts'])
        self.assertEqual((self.tmp_dir / 'assets' / 'cover.png').read_bytes(), b'png')
        self.assertEqual(received, [self.items['Posts']])
        await client.aclose()

    async def test_failed_collection_does_not_stop_others(self) -> None:
        """
        Checks that a collection failing twice is recorded while the other collection is still saved.
        """
        self.items['Authors'] = [{'id': 7, 'name': 'Ann'}]
        client: DirectusClient = self.make_client()
        with self.assertLogs('directus_to_data', level='WARNING'):
            report: ExportReport | None = await directus_to_data(
                collection_name=['Secret', 'Authors'],
                collection_output=str(self.tmp_dir / '{{collectionName}}.json'),
                client=client,
                **self.common_params(),
            )
        assert report is not None
        self.assertIn('Secret', report.failed)
        self.assertEqual(report.exported, ['Authors'])
        self.assertTrue((self.tmp_dir / 'Authors.json').exists())
        secret_calls: int = sum(1 for r in self.requests if r.url.path == '/items/Secret')
        self.assertEqual(secret_calls, 2)
        await client.aclose()

    async def test_server_error_retried_once(self) -> None:
        self.flaky_paths.add('/items/Posts')
        client: DirectusClient = self.make_client()
        with self.assertLogs('directus_to_data', level='INFO'):
            report: ExportReport | None = await directus_to_data(
                collection_name='Posts', collection_output='none', client=client, **self.common_params()
            )
        assert report is not None
        self.assertEqual(report.exported, ['Posts'])
        self.assertEqual(len(self.requests), 2)
        await client.aclose()

    async def test_async_callback_is_awaited(self) -> None:
        received: list[object] = []

        async def callback(data: object) -> None:
            received.append(data)

        client: DirectusClient = self.make_client()
        await directus_to_data(
            collection_name='Posts', collection_output='none', callback=callback, client=client, **self.common_params()
        )
        self.assertEqual(received, [[{'id': 1}]])
        await client.aclose()

    async def test_missing_collection_makes_no_requests(self) -> None:
        client: DirectusClient = self.make_client()
        with self.assertLogs('directus_to_data', level='ERROR'):
            report: ExportReport | None = await directus_to_data(client=client, **self.common_params())
        self.assertIsNone(report)
        self.assertEqual(self.requests, [])
        await client.aclose()

    async def test_apply_without_restore_raises(self) -> None:
        client: DirectusClient = self.make_client()
        with self.assertRaises(SchemaApplyMisuseError):
            await directus_to_data(collection_name='Posts', apply_schema=True, client=client, **self.common_params())
        self.assertEqual(self.requests, [])
        await client.aclose()


class TestCLI(unittest.TestCase):
    """
    Tests the command-line entrypoint.
    """

    def test_missing_collection_exit_code(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            missing: str = str(Path(tmp) / 'missing.json')
            with self.assertLogs('directus_to_data', level='ERROR'):
                computed: int = main(['--config', missing])
        self.assertEqual(computed, 1)

    def test_parse_aliases(self) -> None:
        from directus_to_data import CLI

        args = CLI.parse_args(['-c', 'Posts', 'Authors:id', '-co', 'out/{{collectionName}}.json', '-p', '0', '--apply-schema'])
        self.assertEqual(args.collection_name, ['Posts', 'Authors:id'])
        self.assertEqual(args.collection_output, 'out/{{collectionName}}.json')
        self.assertEqual(args.prettify, '0')
        self.assertTrue(args.apply_schema)
        self.assertFalse(args.force_schema)


if __name__ == '__main__':
    unittest.main()
