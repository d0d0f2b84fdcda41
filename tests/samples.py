"""Canned model responses used across the tests."""

MIRA_OPENING = """STORY:
Mira the little fox woke up early in the Whispering Woods. The sun was warm and the birds sang.
Near an old log, Mira saw a small rabbit sitting all alone. The rabbit looked a little sad.
"Hello," said Mira. "Do you want to play with me?" The rabbit gave a tiny smile.
Then they heard a soft tapping sound behind the big oak tree. What should Mira do next?
CHOICES:
1. Mira asks the rabbit to be her friend
2. Mira and the rabbit peek behind the oak tree
3. Mira shares her sweet berries with the rabbit
IMAGE:
A little fox named Mira meets a shy rabbit beside a mossy log in a sunny forest."""

MIRA_CONTINUATION = """STORY:
Mira and the rabbit tiptoed to the oak tree. A baby woodpecker was tapping on the bark.
"I am practicing," chirped the woodpecker. Mira clapped her paws. The three new friends laughed together.
CHOICES:
1. Mira teaches the woodpecker a song
2. The friends build a leafy fort together
3. Mira invites everyone to a picnic
IMAGE:
A fox, a rabbit and a baby woodpecker laughing together under a big oak tree."""

MIRA_ENDING = """STORY:
As the sun went down, Mira, the rabbit and the woodpecker shared a picnic of berries and seeds.
They promised to meet every morning by the old log. Mira smiled. Friends made every day brighter.
THE END
IMAGE:
Three animal friends sharing a picnic at sunset in a quiet forest clearing."""

NO_CHOICES_RESPONSE = """Mira wandered along the mossy path. The trees whispered softly and a
gentle breeze carried the smell of flowers. Mira felt happy and curious."""
