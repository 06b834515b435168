"""
Order Service — 戻り先ナビゲーション

画面間の「戻る」先は from クエリパラメータで受け渡す（from=<URL エンコードした path+query>）。

- resolve_return_path: 信頼できない from を検証し、ダメならフォールバックを返す
- link_with_from: 遷移先リンクに現在ページを from として付与する
"""

from collections.abc import Mapping
from urllib.parse import parse_qs, quote, urlsplit, urlunsplit

# encodeURIComponent と同じくエスケープしない記号
_FROM_SAFE = "!~*'()"


def resolve_return_path(from_value: str | None, fallback: str) -> str:
    """
    戻り先を決める。

    ルート相対パス（/ で始まる）だけを受け入れる。未指定・空・絶対 URL・
    プロトコル相対（//host）は外部サイトへのリダイレクトになり得るので
    fallback を返す。パスの中身はそれ以上検査しない。
    """
    if not from_value or not from_value.startswith("/"):
        return fallback
    if from_value[1:2] in ("/", "\\"):
        return fallback
    return from_value


def get_from(query_params: Mapping[str, str], fallback: str) -> str:
    return resolve_return_path(query_params.get("from"), fallback)


def link_with_from(href: str, current_path: str, current_query: str = "") -> str:
    """
    遷移先 href に from=<現在ページ> を付ける。

    現在ページ自身が from を持っていればそちらを引き継ぐ（多段遷移でも
    最初の起点に戻れるように）。href が既に from を持っていれば何もしない。
    """
    current_query = current_query.lstrip("?")
    inherited = parse_qs(current_query, keep_blank_values=True).get("from", [""])[0]
    if inherited:
        from_value = inherited
    elif current_query:
        from_value = f"{current_path}?{current_query}"
    else:
        from_value = current_path

    target = urlsplit(href)
    if "from" in parse_qs(target.query, keep_blank_values=True):
        return href

    # スキーム・ホストは捨ててパス部分だけにする
    query = target.query
    query = f"{query}&" if query else ""
    query += f"from={quote(from_value, safe=_FROM_SAFE)}"
    return urlunsplit(("", "", target.path, query, target.fragment))
