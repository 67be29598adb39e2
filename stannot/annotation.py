"""
外部アノテーション統合モジュール
クラスタリング・デコンボリューション・細胞型ラベルなど、外部で計算された
結果をスポット / 細胞の ID（barcode, cell name）で AnnData に統合する
"""

import numpy as np
import pandas as pd
from anndata import AnnData
from typing import Optional, List, Union
import os
import warnings

from .utils import check_unique, infer_separator


ORDER_POLICIES = ('sort', 'strict')


class ReconciliationError(ValueError):
    """アノテーション統合の失敗"""


class KeyDomainError(ReconciliationError):
    """アノテーション表にデータセットに存在しないキーが含まれる"""


class OrderMismatchError(ReconciliationError):
    """フィルタ後のキー順序がアノテーション表と一致しない"""


class EmptyIntersectionError(ReconciliationError):
    """データセットとアノテーション表に共通のキーがない"""


def load_annotation_table(
    path: Union[str, os.PathLike],
    index_col: Union[int, str] = 0,
    sep: Optional[str] = None,
    columns: Optional[List[str]] = None
) -> pd.DataFrame:
    """
    外部アノテーション表（csv / tsv）を読み込み

    Parameters
    ----------
    path : str or PathLike
        ファイルパス（.csv, .tsv, .txt, gzip 圧縮も可）
    index_col : int or str, default=0
        キー（barcode / cell name）として使用する列
    sep : str, optional
        区切り文字（指定しない場合は拡張子から推定）
    columns : list of str, optional
        残すアノテーション列

    Returns
    -------
    table : pd.DataFrame
        キーを index とするアノテーション表
    """
    if sep is None:
        sep = infer_separator(path)

    table = pd.read_csv(path, sep=sep, index_col=index_col)
    table.index = table.index.astype(str)
    table.index.name = None

    check_unique(table.index, name=f"{os.fspath(path)} のキー")

    if columns is not None:
        missing = [c for c in columns if c not in table.columns]
        if missing:
            raise ValueError(f"列が見つかりません: {missing} (利用可能: {list(table.columns)})")
        table = table[columns]

    print(f"アノテーション表を読み込みました: {path} ({table.shape[0]} 行, {table.shape[1]} 列)")

    return table


def check_dimensions(adata: AnnData, table: pd.DataFrame) -> bool:
    """
    データセットとアノテーション表の行数を比較

    QC フィルタリングで除かれたスポット / 細胞があるため、統合前の不一致は
    通常の状態であり、警告のみを出す

    Returns
    -------
    matched : bool
        行数が一致していれば True
    """
    matched = adata.n_obs == table.shape[0]

    if not matched:
        warnings.warn(
            f"行数が一致しません: データセット {adata.n_obs}, アノテーション表 {table.shape[0]}. "
            f"共通のキーに絞り込みます。",
            UserWarning
        )

    return matched


def _as_table(table) -> pd.DataFrame:
    if isinstance(table, pd.Series):
        table = table.to_frame()
    if not isinstance(table, pd.DataFrame):
        raise ValueError(f"アノテーション表は DataFrame である必要があります: {type(table)}")

    table = table.copy()
    table.index = table.index.astype(str)
    return table


def _align(
    adata: AnnData,
    table: pd.DataFrame,
    order: str
) -> AnnData:
    """
    データセットを共通キーに絞り込み、キー順序を検証

    返り値はデータセットの元の順序を保ったコピー
    """
    if order not in ORDER_POLICIES:
        raise ValueError(f"Unknown order: {order}. Use 'sort' or 'strict'.")

    if adata.n_obs == 0:
        raise ValueError("データセットが空です")
    if table.shape[0] == 0:
        raise ValueError("アノテーション表が空です")

    check_unique(adata.obs_names, name="データセットのキー")
    check_unique(table.index, name="アノテーション表のキー")

    check_dimensions(adata, table)

    obs_names = pd.Index(adata.obs_names.astype(str))
    in_table = obs_names.isin(table.index)

    if not in_table.any():
        raise EmptyIntersectionError(
            "データセットとアノテーション表に共通のキーがありません "
            f"(例: データセット {list(obs_names[:3])}, アノテーション表 {list(table.index[:3])})"
        )

    extra = table.index[~table.index.isin(obs_names)]
    if len(extra) > 0:
        raise KeyDomainError(
            f"アノテーション表の {len(extra)} 個のキーがデータセットに存在しません: "
            f"{list(extra[:5])}"
        )

    filtered = adata[in_table].copy()

    # キー配列の一致を確認
    filtered_keys = np.asarray(filtered.obs_names.astype(str))
    table_keys = np.asarray(table.index)
    if order == 'sort':
        filtered_keys = np.sort(filtered_keys)
        table_keys = np.sort(table_keys)

    if not np.array_equal(filtered_keys, table_keys):
        mismatch = int(np.argmax(filtered_keys != table_keys))
        raise OrderMismatchError(
            f"フィルタ後のキー順序がアノテーション表と一致しません "
            f"(位置 {mismatch}: {filtered_keys[mismatch]!r} != {table_keys[mismatch]!r}). "
            f"order='sort' を使うか、アノテーション表を並べ替えてください。"
        )

    return filtered


def _record(adata: AnnData, key_added: str, **info):
    # コピー元の uns と共有しないよう辞書を作り直す
    history = dict(adata.uns.get('reconciliation', {}))
    history[key_added] = info
    adata.uns['reconciliation'] = history


def reconcile(
    adata: AnnData,
    table: pd.DataFrame,
    column: Optional[str] = None,
    key_added: str = 'label',
    order: str = 'sort',
    categorical: bool = True,
    verbose: bool = True
) -> AnnData:
    """
    外部アノテーションを AnnData に統合

    手順:
    1. データセットとアノテーション表のキーの共通部分を計算
    2. データセットを共通部分に絞り込み（元の順序を保持）
    3. 絞り込み後のキー配列とアノテーション表のキー配列の一致を検証
    4. ラベル列をキーで対応付けて adata.obs[key_added] に追加

    Parameters
    ----------
    adata : AnnData
        スポット / 細胞データ（obs_names がキー）
    table : pd.DataFrame
        キーを index とするアノテーション表
    column : str, optional
        統合する列（指定しない場合は最初の列）
    key_added : str, default='label'
        追加する adata.obs の列名
    order : {'sort', 'strict'}, default='sort'
        キー順序の検証方法
        - 'sort': 両方のキーをソートしてから比較（表の行順に依存しない）
        - 'strict': 表の行順がデータセットの順序と完全に一致する必要がある
    categorical : bool, default=True
        ラベルを category 型として保存するかどうか
    verbose : bool, default=True
        進捗を表示するかどうか

    Returns
    -------
    adata : AnnData
        共通キーに絞り込まれ、ラベル列が追加された新しい AnnData
        （入力の adata は変更しない）

    Raises
    ------
    EmptyIntersectionError
        共通のキーがない場合
    KeyDomainError
        アノテーション表にデータセットにないキーがある場合
    OrderMismatchError
        order='strict' でキー順序が一致しない場合

    Notes
    -----
    ラベルは位置ではなくキーで対応付ける。order='sort' では
    アノテーション表の行順に関係なく同じ結果になる。
    """
    table = _as_table(table)

    if column is None:
        if table.shape[1] == 0:
            raise ValueError("アノテーション表にラベル列がありません")
        column = table.columns[0]
    elif column not in table.columns:
        raise ValueError(f"'{column}' not found in annotation table columns {list(table.columns)}")

    if verbose:
        print(f"\n{'='*60}")
        print(f"アノテーション統合: {column} -> obs['{key_added}']")
        print(f"{'='*60}")
        print(f"データセット: {adata.n_obs} 件, アノテーション表: {table.shape[0]} 件")

    filtered = _align(adata, table, order)

    if key_added in filtered.obs:
        warnings.warn(f"adata.obs['{key_added}'] を上書きします", UserWarning)

    labels = table[column].reindex(filtered.obs_names.astype(str))
    labels.index = filtered.obs_names
    if categorical:
        labels = labels.astype('category')
    filtered.obs[key_added] = labels

    n_dropped = adata.n_obs - filtered.n_obs
    _record(
        filtered,
        key_added,
        source_column=str(column),
        n_kept=int(filtered.n_obs),
        n_dropped=int(n_dropped),
        order=order
    )

    if verbose:
        print(f"残存: {filtered.n_obs} 件, 除去: {n_dropped} 件")
        if categorical:
            counts = filtered.obs[key_added].value_counts().sort_index()
            print(f"カテゴリ数: {len(counts)}")
            for label, count in counts.items():
                print(f"  {label}: {count} ({count / filtered.n_obs * 100:.1f}%)")
        print(f"{'='*60}\n")

    return filtered


def _cluster_ids_as_str(values: pd.Series) -> pd.Series:
    # 欠損値を含む整数列は float64 として読み込まれる
    if pd.api.types.is_float_dtype(values) and (values.dropna() % 1 == 0).all():
        values = values.astype('Int64')
    return values.astype(str).where(values.notna())


def reconcile_clusters(
    adata: AnnData,
    table: pd.DataFrame,
    column: Optional[str] = None,
    key_added: str = 'cluster',
    **kwargs
) -> AnnData:
    """
    スポットレベルの空間クラスタを統合

    整数のクラスタ ID は文字列に変換してカテゴリとして扱う
    欠損値は NaN のまま残す（"nan" カテゴリは作らない）
    """
    table = _as_table(table)
    if column is None:
        column = table.columns[0] if table.shape[1] > 0 else None
    if column is not None and column in table.columns:
        table[column] = _cluster_ids_as_str(table[column])

    return reconcile(adata, table, column=column, key_added=key_added, categorical=True, **kwargs)


def reconcile_cell_types(
    adata: AnnData,
    table: pd.DataFrame,
    column: Optional[str] = None,
    key_added: str = 'cell_type',
    **kwargs
) -> AnnData:
    """細胞レベルの細胞型ラベルを統合"""
    return reconcile(adata, table, column=column, key_added=key_added, categorical=True, **kwargs)


def attach_deconvolution(
    adata: AnnData,
    table: pd.DataFrame,
    key_added: str = 'deconvolution',
    order: str = 'sort',
    dominant: bool = True,
    verbose: bool = True
) -> AnnData:
    """
    デコンボリューション結果（スポットごとの細胞型割合）を統合

    Parameters
    ----------
    adata : AnnData
        スポットデータ
    table : pd.DataFrame
        キーを index、細胞型を列とする割合の表
    key_added : str, default='deconvolution'
        保存先のキー
    order : {'sort', 'strict'}, default='sort'
        キー順序の検証方法（reconcile と同じ）
    dominant : bool, default=True
        最大割合の細胞型を adata.obs[f'{key_added}_dominant'] に保存するかどうか
    verbose : bool, default=True
        進捗を表示するかどうか

    Returns
    -------
    adata : AnnData
        共通キーに絞り込まれた新しい AnnData
        - adata.obsm[key_added]: 割合の DataFrame
        - adata.uns[f'{key_added}_cell_types']: 細胞型名
        - adata.obs[f'{key_added}_{細胞型}']: 細胞型ごとの割合
    """
    table = _as_table(table)

    non_numeric = [c for c in table.columns if not pd.api.types.is_numeric_dtype(table[c])]
    if non_numeric:
        raise ValueError(f"デコンボリューション表に数値以外の列があります: {non_numeric}")
    if table.shape[1] == 0:
        raise ValueError("デコンボリューション表に細胞型の列がありません")

    if verbose:
        print(f"\nデコンボリューション結果の統合（{table.shape[1]} 細胞型）...")

    filtered = _align(adata, table, order)

    proportions = table.reindex(filtered.obs_names.astype(str))
    proportions.index = filtered.obs_names
    proportions.columns = proportions.columns.astype(str)

    filtered.obsm[key_added] = proportions
    filtered.uns[f'{key_added}_cell_types'] = list(proportions.columns)

    for cell_type in proportions.columns:
        filtered.obs[f'{key_added}_{cell_type}'] = proportions[cell_type].values

    if dominant:
        observed = proportions.notna().any(axis=1)
        n_missing = int((~observed).sum())
        if n_missing > 0:
            warnings.warn(
                f"割合がすべて欠損しているスポットが {n_missing} 個あります"
                f"（優勢細胞型は NaN）",
                UserWarning
            )
        dominant_types = pd.Series(np.nan, index=proportions.index, dtype=object)
        dominant_types[observed] = proportions[observed].idxmax(axis=1)
        filtered.obs[f'{key_added}_dominant'] = pd.Categorical(
            dominant_types.values, categories=list(proportions.columns)
        )

    _record(
        filtered,
        key_added,
        source_column=list(proportions.columns),
        n_kept=int(filtered.n_obs),
        n_dropped=int(adata.n_obs - filtered.n_obs),
        order=order
    )

    if verbose:
        print(f"残存: {filtered.n_obs} スポット, 除去: {adata.n_obs - filtered.n_obs} スポット")
        if dominant:
            top = filtered.obs[f'{key_added}_dominant'].value_counts().index[0]
            print(f"最も多い優勢細胞型: {top}")

    return filtered
