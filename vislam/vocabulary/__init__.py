from vislam.vocabulary.vocabulary import Vocabulary
