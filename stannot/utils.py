"""
ユーティリティ関数
"""

import os
import numpy as np
from typing import Optional, Sequence, Union


def get_rng(
    seed: Optional[int] = None,
    rng: Optional[np.random.Generator] = None
) -> np.random.Generator:
    """
    乱数生成器を取得

    グローバルな乱数シードは変更せず、明示的な Generator を返す

    Parameters
    ----------
    seed : int, optional
        乱数シード
    rng : np.random.Generator, optional
        既存の乱数生成器（指定された場合はそのまま返す）

    Returns
    -------
    rng : np.random.Generator
        乱数生成器
    """
    if rng is not None and seed is not None:
        raise ValueError("seed と rng は同時に指定できません")

    if rng is not None:
        return rng

    return np.random.default_rng(seed)


def find_first_file(
    directory: Union[str, os.PathLike],
    candidates: Sequence[str],
    required: bool = True
) -> Optional[str]:
    """
    候補ファイル名のうち最初に存在するものを返す

    Parameters
    ----------
    directory : str or PathLike
        検索するディレクトリ
    candidates : sequence of str
        ファイル名の候補（優先順）
    required : bool, default=True
        True の場合、見つからなければ FileNotFoundError

    Returns
    -------
    path : str or None
        見つかったファイルのパス
    """
    for name in candidates:
        path = os.path.join(directory, name)
        if os.path.exists(path):
            return path

    if required:
        raise FileNotFoundError(
            f"{directory} に次のいずれのファイルも見つかりません: {list(candidates)}"
        )
    return None


def infer_separator(path: Union[str, os.PathLike]) -> str:
    """拡張子から区切り文字を推定（.tsv / .txt はタブ、それ以外はカンマ）"""
    name = os.fspath(path).lower()
    if name.endswith('.gz'):
        name = name[:-3]

    if name.endswith('.tsv') or name.endswith('.txt'):
        return '\t'
    return ','


def check_unique(keys, name: str = 'keys'):
    """
    キーの重複をチェック

    重複がある場合は ValueError（最初の数件を表示）
    """
    keys = np.asarray(keys)
    values, counts = np.unique(keys, return_counts=True)
    duplicated = values[counts > 1]

    if len(duplicated) > 0:
        raise ValueError(
            f"{name} に重複があります ({len(duplicated)} 件): {list(duplicated[:5])}"
        )
